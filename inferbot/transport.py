"""Chat transport interface and an HTTP bridge implementation."""

from __future__ import annotations

import abc
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import requests

from .logs import log_event
from .schemas import IncomingMessage, Recipient, TipReceived

BACKOFF_BASE = 1.0
MAX_BACKOFF = 30.0


class ChatTransport(abc.ABC):
    """What the gateway needs from a chat client."""

    supports_inline = False

    @abc.abstractmethod
    def send_text(self, recipient: Recipient, text: str) -> None:
        ...

    @abc.abstractmethod
    def send_file(self, recipient: Recipient, path: Path) -> None:
        ...

    @abc.abstractmethod
    def receive_stream(self) -> Iterator[IncomingMessage]:
        ...


class HTTPBridgeTransport(ChatTransport):
    """Talks to a chat client through a small HTTP bridge.

    ``POST /pm`` and ``POST /gc`` send text, ``POST /file`` uploads a file and
    ``GET /messages`` long-polls for new incoming messages. Tips arriving in
    the same poll are passed to ``on_tip`` and acknowledged with
    ``POST /tips/ack`` once credited; unacknowledged tips are redelivered.
    """

    supports_inline = True

    def __init__(
        self,
        base_url: str,
        token: str = "",
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        poll_wait: int = 25,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self.timeout = timeout
        self.poll_wait = poll_wait
        self._stop = threading.Event()
        self.on_tip: Optional[Callable[[TipReceived], Any]] = None

    def endpoint(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def send_text(self, recipient: Recipient, text: str) -> None:
        if recipient.is_pm:
            resp = self.session.post(self.endpoint("/pm"), json={"nick": recipient.target, "text": text}, timeout=self.timeout)
        else:
            resp = self.session.post(self.endpoint("/gc"), json={"gc": recipient.target, "text": text}, timeout=self.timeout)
        resp.raise_for_status()

    def send_file(self, recipient: Recipient, path: Path) -> None:
        path = Path(path)
        with path.open("rb") as handle:
            resp = self.session.post(
                self.endpoint("/file"),
                data={"kind": recipient.kind.value, "target": recipient.target},
                files={"file": (path.name, handle)},
                timeout=max(self.timeout, 120),
            )
        resp.raise_for_status()

    def _handle_tips(self, tips: Any) -> None:
        for raw in tips:
            try:
                tip = TipReceived.from_dict(raw)
            except (ValueError, TypeError, AttributeError) as exc:
                log_event("Dropping malformed tip", level="warning", error=str(exc))
                continue
            if self.on_tip is None:
                log_event("Tip received with no handler", level="warning", user_id=tip.user_id, atoms=tip.atoms)
                continue
            try:
                self.on_tip(tip)
            except Exception as exc:
                log_event("Tip handling failed", level="error", user_id=tip.user_id, error=repr(exc))
                continue
            if tip.sequence_id is not None:
                self.ack_tip(tip.sequence_id)

    def ack_tip(self, sequence_id: int) -> None:
        try:
            resp = self.session.post(self.endpoint("/tips/ack"), json={"sequence_id": sequence_id}, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            log_event("Tip ack failed", level="warning", sequence_id=sequence_id, error=str(exc))

    def stop(self) -> None:
        self._stop.set()

    def receive_stream(self) -> Iterator[IncomingMessage]:
        backoff = BACKOFF_BASE
        while not self._stop.is_set():
            try:
                resp = self.session.get(
                    self.endpoint("/messages"),
                    params={"wait": self.poll_wait},
                    timeout=self.poll_wait + self.timeout,
                )
                resp.raise_for_status()
                payload = resp.json()
                backoff = BACKOFF_BASE
            except (requests.RequestException, ValueError) as exc:
                log_event("Bridge poll failed", level="warning", error=str(exc))
                self._stop.wait(backoff)
                backoff = min(MAX_BACKOFF, backoff * 2)
                continue
            if isinstance(payload, dict):
                self._handle_tips(payload.get("tips") or [])
            messages = payload.get("messages", []) if isinstance(payload, dict) else payload
            for raw in messages or []:
                try:
                    yield IncomingMessage.from_dict(raw)
                except (ValueError, TypeError, AttributeError) as exc:
                    log_event("Dropping malformed bridge message", level="warning", error=str(exc))
            if not messages:
                time.sleep(0.1)


__all__ = ["ChatTransport", "HTTPBridgeTransport"]
