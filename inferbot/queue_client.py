"""Client for the fal.ai asynchronous queue API.

``submit`` enqueues a request and returns the URLs fal hands back;
``track`` polls the status URL until the request reaches a terminal state,
turning each poll into progress events for the caller.
"""

from __future__ import annotations

import random
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from .errors import InternalError, JobCanceled, SubmitError, TrackingFailed, TrackingTimeout
from .logs import log_event
from .schemas import ErrorEvent, FinalResult, InProgressEvent, LogEvent, QueuedEvent, SubmitHandle

DEFAULT_BASE_URL = "https://queue.fal.run/fal-ai"
REQUEST_TIMEOUT = 30
MAX_BACKOFF = 10.0

Emit = Callable[[Any], None]
Parser = Callable[[Dict[str, Any]], FinalResult]


class TransientError(Exception):
    """Network failure, 5xx or 429: worth another attempt."""


def strip_status_suffix(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith("/status"):
        return url[: -len("/status")]
    return url


def error_detail(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:200] or f"HTTP {resp.status_code}"
    detail = payload.get("detail") if isinstance(payload, dict) else payload
    if isinstance(detail, list):
        parts = [str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail]
        return "; ".join(parts)
    return str(detail or payload)


class InferenceQueueClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
        poll_interval: float = 2.0,
        max_attempts: int = 5,
        max_backoff: float = MAX_BACKOFF,
        timeout_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.headers = {"Authorization": f"Key {api_key}", "Content-Type": "application/json"}
        self.poll_interval = poll_interval
        self.max_attempts = max(1, max_attempts)
        self.max_backoff = max_backoff
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def endpoint(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _backoff(self, attempt: int) -> float:
        base = min(self.max_backoff, max(self.poll_interval, 0.5) * (2 ** max(0, attempt - 1)))
        return base + random.uniform(0, base / 4)

    def _check(self, resp: requests.Response) -> None:
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(f"HTTP {resp.status_code}: {error_detail(resp)}")

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def submit(self, endpoint_path: str, body: Dict[str, Any]) -> SubmitHandle:
        url = self.endpoint(endpoint_path)
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.session.post(url, json=body, headers=self.headers, timeout=REQUEST_TIMEOUT)
                self._check(resp)
            except (requests.RequestException, TransientError) as exc:
                last_error = str(exc)
                log_event("Queue submit failed", level="warning", endpoint=endpoint_path, attempt=attempt, error=last_error)
                if attempt < self.max_attempts:
                    time.sleep(self._backoff(attempt))
                continue
            if resp.status_code >= 400:
                raise SubmitError(error_detail(resp), resp.status_code)
            return self._handle_from(resp)
        raise SubmitError(f"backend unavailable after {self.max_attempts} attempts ({last_error})")

    def _handle_from(self, resp: requests.Response) -> SubmitHandle:
        try:
            payload = resp.json()
        except ValueError:
            raise SubmitError("malformed submit response", resp.status_code) from None
        if not isinstance(payload, dict) or not payload.get("request_id") or not payload.get("status_url"):
            raise SubmitError("submit response is missing request_id or status_url", resp.status_code)
        status_url = str(payload["status_url"])
        response_url = str(payload.get("response_url") or strip_status_suffix(status_url))
        cancel_url = str(payload.get("cancel_url") or f"{strip_status_suffix(status_url)}/cancel")
        position = payload.get("queue_position")
        handle = SubmitHandle(
            request_id=str(payload["request_id"]),
            status_url=status_url,
            response_url=response_url,
            cancel_url=cancel_url,
            initial_position=int(position) if isinstance(position, int) else None,
        )
        log_event("Queue request submitted", request_id=handle.request_id, queue_position=handle.initial_position)
        return handle

    # ------------------------------------------------------------------
    # Track
    # ------------------------------------------------------------------

    def cancel(self, handle: SubmitHandle) -> None:
        try:
            self.session.post(handle.cancel_url, headers=self.headers, timeout=10)
        except requests.RequestException as exc:
            log_event("Queue cancel failed", level="warning", request_id=handle.request_id, error=str(exc))

    def _status(self, handle: SubmitHandle) -> Dict[str, Any]:
        resp = self.session.get(handle.status_url, params={"logs": 1}, headers=self.headers, timeout=REQUEST_TIMEOUT)
        self._check(resp)
        if resp.status_code >= 400:
            raise TrackingFailed(f"status check rejected: {error_detail(resp)}")
        try:
            payload = resp.json()
        except ValueError:
            raise TrackingFailed("malformed status response") from None
        if not isinstance(payload, dict):
            raise TrackingFailed("malformed status response")
        return payload

    def _result(self, handle: SubmitHandle, parser: Parser) -> FinalResult:
        url = strip_status_suffix(handle.response_url)
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.session.get(url, headers=self.headers, timeout=REQUEST_TIMEOUT)
                self._check(resp)
                break
            except (requests.RequestException, TransientError) as exc:
                if attempt == self.max_attempts:
                    raise TrackingFailed(f"could not fetch result: {exc}") from exc
                time.sleep(self._backoff(attempt))
        if resp.status_code >= 400:
            raise TrackingFailed(f"result fetch rejected: {error_detail(resp)}")
        try:
            payload = resp.json()
        except ValueError:
            raise TrackingFailed("malformed result payload") from None
        if not isinstance(payload, dict):
            raise TrackingFailed("malformed result payload")
        try:
            result = parser(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise InternalError(f"result parser failed: {exc}") from exc
        if not result.artifacts:
            raise TrackingFailed("generation completed without any output")
        return result

    def track(
        self,
        handle: SubmitHandle,
        emit: Emit,
        parser: Parser,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> FinalResult:
        """Poll until COMPLETED and return the parsed result.

        ``deadline`` is an absolute value of the client clock. Raises
        :class:`TrackingFailed`, :class:`TrackingTimeout` or
        :class:`JobCanceled`.
        """

        cancel_event = cancel_event or threading.Event()
        if deadline is None:
            deadline = self._clock() + self.timeout_seconds
        seen_logs = 0
        failures = 0

        def send(event: Any) -> None:
            try:
                emit(event)
            except Exception as exc:
                self.cancel(handle)
                raise TrackingFailed(f"progress delivery failed: {exc}") from exc

        if handle.initial_position is not None:
            send(QueuedEvent(position=handle.initial_position))

        while True:
            if cancel_event.is_set():
                self.cancel(handle)
                raise JobCanceled()
            if self._clock() >= deadline:
                self.cancel(handle)
                raise TrackingTimeout(self.timeout_seconds)
            try:
                status = self._status(handle)
            except (requests.RequestException, TransientError) as exc:
                failures += 1
                log_event("Status poll failed", level="warning", request_id=handle.request_id, attempt=failures, error=str(exc))
                if failures >= self.max_attempts:
                    raise TrackingFailed(f"status polling failed {failures} times in a row: {exc}") from exc
                cancel_event.wait(self._backoff(failures))
                continue
            failures = 0

            state = str(status.get("status") or "").upper()
            logs = status.get("logs") or []
            if len(logs) < seen_logs:
                seen_logs = len(logs)
            fresh = [entry.get("message", "") if isinstance(entry, dict) else str(entry) for entry in logs[seen_logs:]]
            seen_logs = len(logs)

            if state == "IN_QUEUE":
                position = status.get("queue_position")
                send(QueuedEvent(position=int(position) if isinstance(position, int) else 0, eta=status.get("eta")))
            elif state == "IN_PROGRESS":
                for line in fresh:
                    if line:
                        send(LogEvent(line=line))
                tail = next((line for line in reversed(fresh) if line), "")
                send(InProgressEvent(stage=state, log_tail=tail))
            elif state == "COMPLETED":
                if status.get("error"):
                    reason = str(status["error"])
                    send(ErrorEvent(reason=reason))
                    raise TrackingFailed(reason)
                return self._result(handle, parser)
            elif state in ("FAILED", "ERROR", "CANCELLED"):
                reason = str(status.get("error") or f"backend reported {state}")
                send(ErrorEvent(reason=reason))
                raise TrackingFailed(reason)
            else:
                raise TrackingFailed(f"unexpected status {state or 'missing'}")

            cancel_event.wait(self.poll_interval)


__all__ = ["InferenceQueueClient", "strip_status_suffix", "TransientError"]
