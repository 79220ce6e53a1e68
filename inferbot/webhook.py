from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests

from .errors import InferbotError
from .logs import log_event

WEBHOOK_TIMEOUT = 60
API_KEY_HEADER = "X-BRAIBOT-API-KEY"


class WebhookError(InferbotError):
    def user_message(self) -> str:
        return "Unable to process your query."


@dataclass(frozen=True)
class WebhookReply:
    session_id: str
    output: str


class AIWebhook:
    """Forwards free-form ``!ai`` messages to an external chat agent.

    The agent answers with a JSON list: the first entry names the session
    (the nick to reply to) and the second carries the output text.
    """

    def __init__(self, url: str, api_key: str, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.api_key = api_key
        self.session = session or requests.Session()

    def ask(self, message: str, user: str) -> WebhookReply:
        try:
            resp = self.session.post(
                self.url,
                json={"message": message, "user": user},
                headers={API_KEY_HEADER: self.api_key},
                timeout=WEBHOOK_TIMEOUT,
            )
        except requests.RequestException as exc:
            log_event("Webhook request failed", level="warning", error=str(exc))
            raise WebhookError(str(exc)) from exc
        if resp.status_code != 200:
            log_event("Webhook returned error status", level="warning", status=resp.status_code, body=resp.text[:200])
            raise WebhookError(f"webhook returned HTTP {resp.status_code}")
        try:
            responses = resp.json()
        except ValueError as exc:
            raise WebhookError("webhook response is not JSON") from exc
        if not isinstance(responses, list) or len(responses) < 2:
            raise WebhookError("webhook returned fewer than two responses")
        first, second = responses[0], responses[1]
        session_id = str(first.get("session_id") or "") if isinstance(first, dict) else ""
        output = str(second.get("output") or "") if isinstance(second, dict) else ""
        if not session_id or not output:
            raise WebhookError("webhook response is missing session_id or output")
        return WebhookReply(session_id=session_id, output=output)


__all__ = ["AIWebhook", "WebhookError", "WebhookReply"]
