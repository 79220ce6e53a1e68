"""End-to-end execution of one generation command.

One pipeline serves every task; per-model differences live in the catalog's
request builders and result parsers. The pipeline is the only code that
moves a :class:`Job` between states and the only place that turns errors
into replies and refunds.
"""

from __future__ import annotations

import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .billing import Authorization, BillingCoordinator
from .courier import ArtifactCourier
from .errors import (
    DeliveryError,
    InferbotError,
    InsufficientFunds,
    InternalError,
    JobCanceled,
    RateUnavailable,
    UserError,
)
from .logs import log_event
from .options import parse_command
from .queue_client import InferenceQueueClient
from .rates import format_units
from .registry import ModelRegistry
from .schemas import (
    JOB_TRANSITIONS,
    ErrorEvent,
    InProgressEvent,
    Job,
    JobState,
    LogEvent,
    QueuedEvent,
    Recipient,
    Task,
)
from .throttle import ProgressThrottler
from .transport import ChatTransport


def transition(job: Job, new_state: JobState) -> None:
    if new_state == job.state:
        return
    if new_state not in JOB_TRANSITIONS.get(job.state, ()):
        raise InternalError(f"illegal job transition {job.state.value} -> {new_state.value}")
    log_event("Job state changed", level="debug", job_id=job.id, old=job.state.value, new=new_state.value)
    job.state = new_state


def format_usd(value: Decimal) -> str:
    return f"${value:.2f}"


class JobPipeline:
    def __init__(
        self,
        registry: ModelRegistry,
        billing: BillingCoordinator,
        queue: InferenceQueueClient,
        courier: ArtifactCourier,
        transport: ChatTransport,
        atoms_per_unit: int = 100_000_000,
        rate_unit: str = "DCR",
        throttle_intervals: Optional[Dict[str, float]] = None,
    ) -> None:
        self.registry = registry
        self.billing = billing
        self.queue = queue
        self.courier = courier
        self.transport = transport
        self.atoms_per_unit = atoms_per_unit
        self.rate_unit = rate_unit
        self.throttle_intervals = throttle_intervals

    def reply(self, recipient: Recipient, text: str) -> None:
        self.transport.send_text(recipient, text)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        user_id: str,
        task: Task,
        args: str,
        recipient: Recipient,
        cancel_event: Optional[threading.Event] = None,
        on_job: Optional[Callable[[Job], None]] = None,
    ) -> Optional[Job]:
        """Execute one command. Returns the finished job, or ``None`` when no job was started."""

        cancel_event = cancel_event or threading.Event()
        descriptor = self.registry.current(task, user_id)
        if not args.strip():
            self.reply(recipient, descriptor.help_text)
            return None
        try:
            parsed = parse_command(descriptor, args)
        except UserError as exc:
            self.reply(recipient, exc.user_message())
            return None
        price = descriptor.price_for(parsed.pricing_options())
        job = Job(user_id=user_id, task=task, model_name=descriptor.name, recipient=recipient, price_usd=price)
        if on_job is not None:
            on_job(job)

        try:
            auth = self.billing.authorize_and_debit(user_id, price, job_id=job.id)
        except (InsufficientFunds, RateUnavailable) as exc:
            job.error = str(exc)
            self.reply(recipient, exc.user_message())
            log_event("Job rejected", job_id=job.id, user_id=user_id, reason=str(exc))
            return job
        job.priced_atoms = auth.debit_atoms
        job.rate_snapshot = auth.snapshot
        transition(job, JobState.BILLED)
        log_event("Job billed", job_id=job.id, user_id=user_id, model=descriptor.name, price_usd=str(price), atoms=auth.debit_atoms)

        try:
            self.reply(recipient, f"Processing your {task.label} request with {descriptor.name} ({format_usd(price)})...")
            if cancel_event.is_set():
                raise JobCanceled()
            job.request_body = descriptor.build_request(parsed.prompt, parsed.image_url, parsed.options)
            handle = self.queue.submit(descriptor.endpoint_path, job.request_body)
            job.status_url = handle.status_url
            job.response_url = handle.response_url
            job.cancel_url = handle.cancel_url
            job.submitted_at = time.time()
            transition(job, JobState.SUBMITTED)

            throttler = ProgressThrottler(lambda text: self.reply(recipient, text), task, self.throttle_intervals)
            try:
                result = self.queue.track(handle, self._progress_sink(job, throttler), descriptor.parse_result, cancel_event)
            finally:
                dropped = throttler.close()
                if dropped:
                    log_event("Dropped stale progress messages", level="debug", job_id=job.id, count=dropped)
            transition(job, JobState.COMPLETED)
            job.artifacts = list(result.artifacts)
            self._deliver(job, parsed.prompt, cancel_event)
            transition(job, JobState.DELIVERED)
        except InferbotError as exc:
            self._fail(job, auth, exc)
            return job
        except Exception as exc:
            log_event("Job crashed", level="error", job_id=job.id, user_id=user_id, model=descriptor.name, state=job.state.value, error=repr(exc))
            self._fail(job, auth, InternalError(str(exc)))
            return job

        self.reply(recipient, self.receipt(auth))
        log_event("Job delivered", job_id=job.id, user_id=user_id, artifacts=job.delivered)
        return job

    def _progress_sink(self, job: Job, throttler: ProgressThrottler) -> Callable[[Any], None]:
        def sink(event: Any) -> None:
            if isinstance(event, QueuedEvent):
                transition(job, JobState.QUEUED)
            elif isinstance(event, InProgressEvent):
                transition(job, JobState.IN_PROGRESS)
            elif isinstance(event, LogEvent):
                job.last_event_seen += 1
            elif isinstance(event, ErrorEvent):
                # Reported once, together with the refund, by _fail.
                job.error = event.reason
                return
            throttler(event)

        return sink

    def _deliver(self, job: Job, prompt: str, cancel_event: threading.Event) -> None:
        failures: List[str] = []
        total = len(job.artifacts)
        for index, artifact in enumerate(job.artifacts, start=1):
            try:
                self.courier.deliver(artifact, job.recipient, cancel_event, alt=prompt)
                job.delivered += 1
            except DeliveryError as exc:
                log_event("Artifact delivery failed", level="warning", job_id=job.id, index=index, error=str(exc))
                failures.append(f"{index}/{total}: {exc}")
            except JobCanceled:
                if not job.delivered:
                    raise
                failures.append(f"{index}/{total}: canceled")
                break
            except Exception as exc:
                if not job.delivered:
                    raise
                log_event("Artifact delivery crashed", level="error", job_id=job.id, index=index, error=repr(exc))
                failures.append(f"{index}/{total}: internal error")
        if not job.delivered:
            raise DeliveryError(failures[0].split(": ", 1)[1] if failures else "nothing to deliver")
        for failure in failures:
            self.reply(job.recipient, f"Could not deliver output {failure}")

    def _fail(self, job: Job, auth: Authorization, exc: InferbotError) -> None:
        if job.state not in (JobState.FAILED, JobState.REFUNDED):
            transition(job, JobState.FAILED)
        job.error = str(exc)
        refunded = self.billing.refund(auth, reason=f"{type(exc).__name__}: {exc}")
        job.refunded_atoms = refunded
        transition(job, JobState.REFUNDED)
        message = exc.user_message()
        if refunded:
            message = message.rstrip(".") + f". Your {refunded} atoms have been refunded."
        log_event(
            "Job failed",
            level="error" if isinstance(exc, InternalError) else "warning",
            job_id=job.id,
            user_id=job.user_id,
            model=job.model_name,
            error=str(exc),
            kind=type(exc).__name__,
            refunded=refunded,
        )
        try:
            self.reply(job.recipient, message)
        except Exception as reply_exc:
            log_event("Could not send failure reply", level="warning", job_id=job.id, error=str(reply_exc))

    def receipt(self, auth: Authorization) -> str:
        if not self.billing.enabled or not auth.charged:
            return "Billing is disabled, nothing was charged for this generation."
        balance = self.billing.balance(auth.user_id)
        return (
            f"Billed {auth.debit_atoms} atoms ({format_usd(auth.price_usd)}), "
            f"remaining {balance} atoms ({format_units(balance, self.atoms_per_unit)} {self.rate_unit})"
        )


__all__ = ["JobPipeline", "transition", "format_usd"]
