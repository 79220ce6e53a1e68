"""Download generated artifacts and hand them to the chat transport."""

from __future__ import annotations

import base64
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote_plus

import requests

from .errors import DeliveryError, JobCanceled
from .logs import log_event
from .schemas import Artifact, Recipient
from .transport import ChatTransport

CHUNK_SIZE = 64 * 1024
DOWNLOAD_TIMEOUT = 120
INLINE_TYPES = {
    "image/png", "image/jpeg", "image/jpg", "image/webp",
    "audio/mpeg", "audio/ogg", "audio/wav", "audio/x-wav",
}

EXTENSION_OVERRIDES = {
    "audio/mpeg": "mp3",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "video/quicktime": "mov",
    "text/plain": "txt",
}


def extension_for(content_type: str) -> str:
    """``image/png`` -> ``png``, ``image/svg+xml`` -> ``svg``, unknown -> ``bin``."""

    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime in EXTENSION_OVERRIDES:
        return EXTENSION_OVERRIDES[mime]
    if "/" not in mime:
        return "bin"
    subtype = mime.split("/", 1)[1].split("+", 1)[0]
    return subtype or "bin"


@contextmanager
def scoped_tempfile(extension: str, directory: Optional[str] = None) -> Iterator[Path]:
    handle = tempfile.NamedTemporaryFile(prefix="inferbot-", suffix=f".{extension}", dir=directory, delete=False)
    handle.close()
    path = Path(handle.name)
    try:
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


def embed_markup(data: bytes, content_type: str, alt: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"--embed[alt={quote_plus(alt)},type={content_type},data={encoded}]--"


class ArtifactCourier:
    def __init__(
        self,
        transport: ChatTransport,
        session: Optional[requests.Session] = None,
        inline_limit: int = 1024 * 1024,
        temp_dir: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.session = session or requests.Session()
        self.inline_limit = inline_limit
        self.temp_dir = temp_dir

    def download(self, url: str, path: Path, cancel_event: Optional[threading.Event] = None) -> int:
        written = 0
        try:
            with self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
                if not 200 <= resp.status_code < 300:
                    raise DeliveryError(f"download failed with HTTP {resp.status_code}")
                with path.open("wb") as handle:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise JobCanceled()
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
        except requests.RequestException as exc:
            raise DeliveryError(f"download failed: {exc}") from exc
        return written

    def inline_ok(self, artifact: Artifact, size: int) -> bool:
        content_type = artifact.content_type.split(";", 1)[0].strip().lower()
        return self.transport.supports_inline and content_type in INLINE_TYPES and 0 < size < self.inline_limit

    def deliver(
        self,
        artifact: Artifact,
        recipient: Recipient,
        cancel_event: Optional[threading.Event] = None,
        alt: str = "",
    ) -> None:
        """Fetch ``artifact`` and send it to ``recipient``.

        Raises :class:`DeliveryError` when the download or the upload fails and
        :class:`JobCanceled` when ``cancel_event`` fires before the send.
        """

        with scoped_tempfile(extension_for(artifact.content_type), self.temp_dir) as path:
            size = self.download(artifact.url, path, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise JobCanceled()
            try:
                if self.inline_ok(artifact, size):
                    self.transport.send_text(recipient, embed_markup(path.read_bytes(), artifact.content_type, alt or "generated output"))
                else:
                    self.transport.send_file(recipient, path)
            except Exception as exc:
                raise DeliveryError(f"upload failed: {exc}") from exc
        log_event("Artifact delivered", url=artifact.url, content_type=artifact.content_type, bytes=size, target=recipient.target)


__all__ = ["ArtifactCourier", "extension_for", "scoped_tempfile", "embed_markup"]
