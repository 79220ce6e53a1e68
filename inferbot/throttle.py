"""Rate-limit progress chatter from a running job.

Events are mapped to one of four channels, each with a minimum interval
between messages. The newest message per channel waits as *pending* until
its channel may speak again; it is dropped if it repeats the last message
sent on that channel. Errors go out immediately.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .schemas import ErrorEvent, InProgressEvent, LogEvent, QueuedEvent, Task

QUEUE = "queue"
PROGRESS = "progress"
LOG = "log"
REASSURANCE = "reassurance"

DEFAULT_INTERVALS: Dict[str, float] = {
    QUEUE: 30.0,
    PROGRESS: 20.0,
    LOG: 15.0,
    REASSURANCE: 120.0,
}

REASSURANCE_TEXT: Dict[Task, str] = {
    Task.TEXT2IMAGE: "The image generation is in process\nImage generation can take a few minutes",
    Task.IMAGE2IMAGE: "The image generation is in process\nImage generation can take a few minutes",
    Task.TEXT2SPEECH: "The speech generation is in process\nSpeech generation can take a few minutes",
    Task.TEXT2VIDEO: "The video generation is in process\nVideo generation can take a long time, up to 20 minutes",
    Task.IMAGE2VIDEO: "The video generation is in process\nVideo generation can take a long time, up to 20 minutes",
}


@dataclass
class ChannelState:
    last_sent_at: Optional[float] = None
    last_sent: Optional[str] = None
    pending: Optional[Tuple[int, str]] = None


def format_event(event: object) -> Optional[Tuple[str, str]]:
    if isinstance(event, QueuedEvent):
        eta = f"{event.eta}s" if event.eta is not None else "unknown"
        return QUEUE, f"Queue position: {event.position}, ETA: {eta}"
    if isinstance(event, InProgressEvent):
        return PROGRESS, f"Status: {event.stage}"
    if isinstance(event, LogEvent):
        lines = [line for line in event.line.strip().splitlines() if line.strip()]
        return (LOG, f"Log: {lines[-1].strip()}") if lines else None
    return None


class ProgressThrottler:
    """Callable event sink that forwards a throttled subset of messages to ``send``.

    Pending messages are flushed in the order they were offered, and sending
    one discards every older pending message so output is never reordered.
    """

    def __init__(
        self,
        send: Callable[[str], None],
        task: Optional[Task] = None,
        intervals: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send = send
        self._clock = clock
        self.intervals = dict(DEFAULT_INTERVALS)
        self.intervals.update(intervals or {})
        self.reassurance = REASSURANCE_TEXT.get(task) if task is not None else None
        self._channels: Dict[str, ChannelState] = {name: ChannelState() for name in self.intervals}
        self._seq = itertools.count()
        self.sent = 0

    def __call__(self, event: object) -> None:
        self.handle(event)

    def handle(self, event: object) -> None:
        if isinstance(event, ErrorEvent):
            for state in self._channels.values():
                state.pending = None
            self._emit(f"Error: {event.reason}")
            return
        formatted = format_event(event)
        if formatted is not None:
            self.offer(*formatted)
        if isinstance(event, InProgressEvent) and self.reassurance:
            self.offer(REASSURANCE, self.reassurance)
        self.tick()

    def offer(self, channel: str, text: str) -> None:
        self._channels[channel].pending = (next(self._seq), text)

    def tick(self) -> None:
        """Flush every pending message whose channel interval has elapsed."""

        now = self._clock()
        queued = sorted(
            ((state.pending[0], name) for name, state in self._channels.items() if state.pending is not None),
        )
        for seq, name in queued:
            state = self._channels[name]
            if state.pending is None or state.pending[0] != seq:
                continue
            text = state.pending[1]
            if name != REASSURANCE and text == state.last_sent:
                state.pending = None
                continue
            if state.last_sent_at is not None and now - state.last_sent_at < self.intervals[name]:
                continue
            state.pending = None
            self._emit(text)
            state.last_sent = text
            state.last_sent_at = now
            for other in self._channels.values():
                if other.pending is not None and other.pending[0] < seq:
                    other.pending = None

    def close(self) -> int:
        """Drop pending messages once the job is terminal; returns how many were dropped.

        Anything still pending describes a state the job has already left.
        """

        dropped = 0
        for state in self._channels.values():
            if state.pending is not None:
                state.pending = None
                dropped += 1
        return dropped

    def _emit(self, text: str) -> None:
        self._send(text)
        self.sent += 1


__all__ = ["ProgressThrottler", "DEFAULT_INTERVALS", "REASSURANCE_TEXT", "format_event"]
