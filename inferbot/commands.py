"""Dispatch ``!`` commands from chat to the pipeline and the small info commands."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

from .billing import BillingCoordinator
from .errors import InferbotError, RateUnavailable, UnknownCommand, UserError
from .logs import log_event
from .pipeline import JobPipeline, format_usd
from .rates import RateOracle, format_units
from .registry import ModelRegistry
from .schemas import ChatKind, IncomingMessage, Job, Recipient, Task, TipReceived, parse_task
from .transport import ChatTransport
from .webhook import AIWebhook, WebhookError

HELP_TEXT = """Available commands:
• !help [task] [model] - Show help, the models of a task or one model's options
• !balance - Show your current balance
• !rate - Show the current exchange rates
• !listmodels <task> (alias !models) - List available models for a task
• !setmodel <task> <model> - Choose the model you use for a task
• !text2image <prompt> [options] - Generate images from text
• !image2image <image_url> [prompt] [options] - Transform an image
• !text2speech <text> [options] - Convert text to speech
• !text2video <prompt> [options] - Generate a video from text
• !image2video <image_url> <prompt> [options] - Animate an image
• !ai <message> - Ask the AI assistant
• !cancel - Cancel your running generations

Tasks: text2image (t2i), image2image (i2i), text2speech (t2s), text2video (t2v), image2video (i2v)"""


def split_command(text: str) -> Optional[tuple]:
    stripped = (text or "").strip()
    if not stripped.startswith("!") or len(stripped) == 1:
        return None
    parts = stripped[1:].split(None, 1)
    return parts[0].lower(), (parts[1] if len(parts) > 1 else "")


class CommandRouter:
    def __init__(
        self,
        registry: ModelRegistry,
        pipeline: JobPipeline,
        billing: BillingCoordinator,
        oracle: RateOracle,
        transport: ChatTransport,
        webhook: Optional[AIWebhook] = None,
        atoms_per_unit: int = 100_000_000,
        rate_unit: str = "DCR",
    ) -> None:
        self.registry = registry
        self.pipeline = pipeline
        self.billing = billing
        self.oracle = oracle
        self.transport = transport
        self.webhook = webhook
        self.atoms_per_unit = atoms_per_unit
        self.rate_unit = rate_unit
        self.cancel_jobs: Optional[Callable[[str], int]] = None
        self._handlers: Dict[str, Callable[[IncomingMessage, str], None]] = {
            "help": self.cmd_help,
            "balance": self.cmd_balance,
            "rate": self.cmd_rate,
            "listmodels": self.cmd_listmodels,
            "models": self.cmd_listmodels,
            "setmodel": self.cmd_setmodel,
            "ai": self.cmd_ai,
            "cancel": self.cmd_cancel,
        }

    def is_generation(self, msg: IncomingMessage) -> bool:
        parsed = split_command(msg.text)
        return parsed is not None and parse_task(parsed[0]) is not None

    def handle(
        self,
        msg: IncomingMessage,
        cancel_event: Optional[threading.Event] = None,
        on_job: Optional[Callable[[Job], None]] = None,
    ) -> Optional[Job]:
        parsed = split_command(msg.text)
        if parsed is None:
            return None
        name, args = parsed
        recipient = msg.reply_to
        log_event("Command received", command=name, user_id=msg.sender_id, kind=msg.kind.value)
        try:
            task = parse_task(name)
            if task is not None:
                return self.pipeline.run(msg.sender_id, task, args, recipient, cancel_event, on_job)
            handler = self._handlers.get(name)
            if handler is None:
                raise UnknownCommand(name)
            handler(msg, args)
        except InferbotError as exc:
            self.transport.send_text(recipient, exc.user_message())
        return None

    def handle_tip(self, tip: TipReceived) -> int:
        """Credit ``tip`` and thank the sender. Returns the new balance."""

        balance = self.billing.credit_tip(tip.user_id, tip.atoms, tip.sequence_id)
        log_event("Tip received", user_id=tip.user_id, atoms=tip.atoms, balance=balance, sequence_id=tip.sequence_id)
        try:
            self.transport.send_text(
                tip.thank_to,
                f"Thank you for the tip of {format_units(tip.atoms, self.atoms_per_unit)} {self.rate_unit}!",
            )
        except Exception as exc:
            log_event("Could not send tip thanks", level="warning", user_id=tip.user_id, error=str(exc))
        return balance

    # ------------------------------------------------------------------
    # Info commands
    # ------------------------------------------------------------------

    def _task_arg(self, value: str) -> Task:
        task = parse_task(value)
        if task is None:
            raise UserError(f"Unknown task '{value}'. Valid tasks: {', '.join(t.value for t in Task)}")
        return task

    def cmd_help(self, msg: IncomingMessage, args: str) -> None:
        parts = args.split()
        if not parts:
            self.transport.send_text(msg.reply_to, HELP_TEXT)
            return
        task = self._task_arg(parts[0])
        if len(parts) > 1:
            descriptor = self.registry.get(task, parts[1])
        else:
            descriptor = self.registry.current(task, msg.sender_id)
        self.transport.send_text(msg.reply_to, descriptor.help_text)

    def cmd_balance(self, msg: IncomingMessage, args: str) -> None:
        atoms = self.billing.balance(msg.sender_id)
        text = f"Your current balance is {format_units(atoms, self.atoms_per_unit)} {self.rate_unit} ({atoms} atoms)"
        try:
            text += f", about {format_usd(self.oracle.atoms_to_usd(atoms))}"
        except RateUnavailable:
            pass
        self.transport.send_text(msg.reply_to, text)

    def cmd_rate(self, msg: IncomingMessage, args: str) -> None:
        snapshot = self.oracle.snapshot()
        lines = [f"Current {self.rate_unit} Exchange Rates:", f"USD: ${snapshot.usd_per_unit:.2f}"]
        if snapshot.btc_per_unit is not None:
            lines.append(f"BTC: {snapshot.btc_per_unit:.8f}")
        self.transport.send_text(msg.reply_to, "\n".join(lines))

    def cmd_listmodels(self, msg: IncomingMessage, args: str) -> None:
        if not args.strip():
            raise UserError(f"Usage: !listmodels <task>. Valid tasks: {', '.join(t.value for t in Task)}")
        task = self._task_arg(args.split()[0])
        current = self.registry.current(task, msg.sender_id).name
        lines: List[str] = [f"Available {task.value} models:"]
        for descriptor in self.registry.list(task):
            marker = " (current)" if descriptor.name == current else ""
            lines.append(f"• {descriptor.name}{marker} - {format_usd(descriptor.price_usd)} - {descriptor.description}")
        self.transport.send_text(msg.reply_to, "\n".join(lines))

    def cmd_setmodel(self, msg: IncomingMessage, args: str) -> None:
        parts = args.split()
        if len(parts) < 2:
            raise UserError("Usage: !setmodel <task> <model>")
        task = self._task_arg(parts[0])
        descriptor = self.registry.set_current(task, parts[1], user_id=msg.sender_id)
        log_event("Model preference set", user_id=msg.sender_id, task=task.value, model=descriptor.name)
        self.transport.send_text(msg.reply_to, f"Model for {task.value} set to {descriptor.name}.")

    def cmd_ai(self, msg: IncomingMessage, args: str) -> None:
        if self.webhook is None:
            self.transport.send_text(msg.reply_to, "Webhook functionality is not enabled. Try again later.")
            return
        if not args.strip():
            raise UserError("Usage: !ai <message>")
        try:
            reply = self.webhook.ask(args.strip(), msg.sender_nick)
        except WebhookError as exc:
            self.transport.send_text(msg.reply_to, exc.user_message())
            return
        self.transport.send_text(Recipient(ChatKind.PM, reply.session_id), reply.output)

    def cmd_cancel(self, msg: IncomingMessage, args: str) -> None:
        count = self.cancel_jobs(msg.sender_id) if self.cancel_jobs is not None else 0
        if count:
            self.transport.send_text(msg.reply_to, f"Canceling {count} running job(s).")
        else:
            self.transport.send_text(msg.reply_to, "You have no running jobs.")


__all__ = ["CommandRouter", "HELP_TEXT", "split_command"]
