"""Shared schema definitions used across the gateway."""
from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple


class Task(str, enum.Enum):
    TEXT2IMAGE = "text2image"
    IMAGE2IMAGE = "image2image"
    TEXT2SPEECH = "text2speech"
    TEXT2VIDEO = "text2video"
    IMAGE2VIDEO = "image2video"

    @property
    def label(self) -> str:
        return {
            Task.TEXT2IMAGE: "image",
            Task.IMAGE2IMAGE: "image",
            Task.TEXT2SPEECH: "speech",
            Task.TEXT2VIDEO: "video",
            Task.IMAGE2VIDEO: "video",
        }[self]

    @property
    def needs_image(self) -> bool:
        return self in (Task.IMAGE2IMAGE, Task.IMAGE2VIDEO)


TASK_ALIASES: Dict[str, Task] = {
    "t2i": Task.TEXT2IMAGE,
    "i2i": Task.IMAGE2IMAGE,
    "t2s": Task.TEXT2SPEECH,
    "tts": Task.TEXT2SPEECH,
    "t2v": Task.TEXT2VIDEO,
    "i2v": Task.IMAGE2VIDEO,
}


def parse_task(value: str) -> Optional[Task]:
    key = (value or "").strip().lower()
    if key in TASK_ALIASES:
        return TASK_ALIASES[key]
    try:
        return Task(key)
    except ValueError:
        return None


class JobState(str, enum.Enum):
    NEW = "new"
    BILLED = "billed"
    SUBMITTED = "submitted"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    FAILED = "failed"
    REFUNDED = "refunded"


# Allowed edges of the job state machine.
JOB_TRANSITIONS: Dict[JobState, Tuple[JobState, ...]] = {
    JobState.NEW: (JobState.BILLED,),
    JobState.BILLED: (JobState.SUBMITTED, JobState.FAILED),
    JobState.SUBMITTED: (JobState.QUEUED, JobState.IN_PROGRESS, JobState.COMPLETED, JobState.FAILED),
    JobState.QUEUED: (JobState.IN_PROGRESS, JobState.COMPLETED, JobState.FAILED),
    JobState.IN_PROGRESS: (JobState.QUEUED, JobState.COMPLETED, JobState.FAILED),
    JobState.COMPLETED: (JobState.DELIVERED, JobState.FAILED),
    JobState.FAILED: (JobState.REFUNDED,),
    JobState.DELIVERED: (),
    JobState.REFUNDED: (),
}


@dataclass(frozen=True)
class ParamSpec:
    """Describes one ``--option`` accepted by a model."""

    name: str
    kind: str = "str"  # str | int | float | bool | choice
    default: Any = None
    choices: Tuple[str, ...] = ()
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    aliases: Tuple[str, ...] = ()
    help: str = ""


@dataclass(frozen=True)
class Artifact:
    url: str
    content_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    file_name: Optional[str] = None


@dataclass(frozen=True)
class FinalResult:
    artifacts: List[Artifact] = field(default_factory=list)
    seed: Optional[int] = None


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable catalog entry for one model of one task."""

    task: Task
    name: str
    endpoint_path: str
    price_usd: Decimal
    description: str
    help_text: str
    pricing_fn: Callable[[Dict[str, Any]], Decimal]
    build_request: Callable[[str, Optional[str], Dict[str, Any]], Dict[str, Any]]
    parse_result: Callable[[Dict[str, Any]], FinalResult]
    schema: Dict[str, ParamSpec] = field(default_factory=dict)

    def price_for(self, options: Dict[str, Any]) -> Decimal:
        return self.pricing_fn(options)


@dataclass(frozen=True)
class SubmitHandle:
    request_id: str
    status_url: str
    response_url: str
    cancel_url: str
    initial_position: Optional[int] = None


@dataclass(frozen=True)
class RateSnapshot:
    usd_per_unit: Decimal
    quoted_at: float
    btc_per_unit: Optional[Decimal] = None

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.quoted_at


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueuedEvent:
    position: int
    eta: Optional[int] = None


@dataclass(frozen=True)
class InProgressEvent:
    stage: str
    log_tail: str = ""


@dataclass(frozen=True)
class LogEvent:
    line: str


@dataclass(frozen=True)
class ErrorEvent:
    reason: str


ProgressEvent = Any  # QueuedEvent | InProgressEvent | LogEvent | ErrorEvent


# ---------------------------------------------------------------------------
# Chat side
# ---------------------------------------------------------------------------


class ChatKind(str, enum.Enum):
    PM = "pm"
    GC = "gc"


@dataclass(frozen=True)
class Recipient:
    kind: ChatKind
    target: str  # user nick for PM, group id for GC

    @property
    def is_pm(self) -> bool:
        return self.kind == ChatKind.PM


@dataclass(frozen=True)
class IncomingMessage:
    kind: ChatKind
    sender_id: str
    sender_nick: str
    text: str
    group_id: Optional[str] = None

    @property
    def reply_to(self) -> Recipient:
        if self.kind == ChatKind.GC and self.group_id:
            return Recipient(ChatKind.GC, self.group_id)
        return Recipient(ChatKind.PM, self.sender_nick)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "IncomingMessage":
        kind = ChatKind(str(payload.get("kind", "pm")).lower())
        sender_id = str(payload.get("sender_id") or payload.get("uid") or "").strip()
        sender_nick = str(payload.get("sender_nick") or payload.get("nick") or sender_id).strip()
        group_id = payload.get("group_id") or payload.get("gc")
        text = str(payload.get("text") or payload.get("message") or "")
        if not sender_id:
            raise ValueError("sender_id is required")
        if kind == ChatKind.GC and not group_id:
            raise ValueError("group_id is required for group chat messages")
        return cls(kind=kind, sender_id=sender_id, sender_nick=sender_nick, text=text, group_id=group_id)


@dataclass(frozen=True)
class TipReceived:
    """A payment from a chat user, credited to their balance."""

    user_id: str
    atoms: int
    nick: str = ""
    sequence_id: Optional[int] = None

    @property
    def thank_to(self) -> Recipient:
        return Recipient(ChatKind.PM, self.nick or self.user_id)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TipReceived":
        user_id = str(payload.get("user_id") or payload.get("uid") or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        if payload.get("atoms") is not None:
            atoms = int(payload["atoms"])
        elif payload.get("amount_matoms") is not None:
            # Chat wallets report milli-atoms.
            atoms = int(payload["amount_matoms"]) // 1000
        else:
            raise ValueError("atoms is required")
        if atoms <= 0:
            raise ValueError("tip amount must be positive")
        sequence = payload.get("sequence_id")
        return cls(
            user_id=user_id,
            atoms=atoms,
            nick=str(payload.get("nick") or "").strip(),
            sequence_id=int(sequence) if sequence is not None else None,
        )


@dataclass
class Job:
    """A single end-to-end execution of one command. Lives only in memory."""

    user_id: str
    task: Task
    model_name: str
    recipient: Recipient
    id: str = field(default_factory=lambda: f"job-{uuid.uuid4().hex[:12]}")
    request_body: Dict[str, Any] = field(default_factory=dict)
    price_usd: Decimal = Decimal("0")
    priced_atoms: int = 0
    rate_snapshot: Optional[RateSnapshot] = None
    state: JobState = JobState.NEW
    created_at: float = field(default_factory=time.time)
    submitted_at: Optional[float] = None
    status_url: Optional[str] = None
    response_url: Optional[str] = None
    cancel_url: Optional[str] = None
    last_event_seen: int = 0
    artifacts: List[Artifact] = field(default_factory=list)
    delivered: int = 0
    refunded_atoms: int = 0
    error: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "task": self.task.value,
            "model": self.model_name,
            "state": self.state.value,
            "price_usd": str(self.price_usd),
            "priced_atoms": self.priced_atoms,
            "created_at": self.created_at,
            "submitted_at": self.submitted_at,
            "delivered": self.delivered,
            "error": self.error,
        }
