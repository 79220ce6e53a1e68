"""Error taxonomy for inferbot jobs and commands."""

from __future__ import annotations

from typing import Optional


class InferbotError(Exception):
    """Base class for every error the gateway maps to a user reply."""

    def user_message(self) -> str:
        return str(self)


class ConfigError(InferbotError):
    """Raised when required configuration is missing or invalid."""


class UserError(InferbotError):
    """Malformed arguments, unknown models or commands. No side effects."""


class ModelNotFound(UserError):
    def __init__(self, task: str, name: str) -> None:
        super().__init__(f"Model '{name}' not found for {task}")
        self.task = task
        self.name = name


class InvalidOption(UserError):
    pass


class UnknownCommand(UserError):
    def __init__(self, command: str) -> None:
        super().__init__(f"Unknown command: !{command}. Type !help for a list of commands.")
        self.command = command


class InsufficientFunds(InferbotError):
    def __init__(self, balance: int, required: int, price_usd: Optional[object] = None) -> None:
        super().__init__(f"insufficient balance: have {balance} atoms, need {required} atoms")
        self.balance = balance
        self.required = required
        self.price_usd = price_usd

    def user_message(self) -> str:
        price = f" (${self.price_usd})" if self.price_usd is not None else ""
        return (
            f"Insufficient balance. You have {self.balance} atoms, but this operation requires "
            f"{self.required} atoms{price}. Please send a tip to use this feature."
        )


class RateUnavailable(InferbotError):
    def user_message(self) -> str:
        return "Exchange rate is currently unavailable, please try again in a moment."


class SubmitError(InferbotError):
    """The backend did not accept the job."""

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code

    def user_message(self) -> str:
        return f"Could not start the generation: {self.reason}"


class TrackingFailed(InferbotError):
    """The backend reported FAILED or polling could not continue."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def user_message(self) -> str:
        return f"Generation failed: {self.reason}"


class TrackingTimeout(TrackingFailed):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"timed out after {int(seconds)}s")
        self.seconds = seconds


class JobCanceled(InferbotError):
    def __init__(self, reason: str = "canceled") -> None:
        super().__init__(reason)
        self.reason = reason

    def user_message(self) -> str:
        return f"Job canceled ({self.reason})."


class DeliveryError(InferbotError):
    def user_message(self) -> str:
        return f"Generation succeeded but delivery failed: {self}"


class InternalError(InferbotError):
    def user_message(self) -> str:
        return "An internal error occurred while processing your request."


__all__ = [
    "InferbotError",
    "ConfigError",
    "UserError",
    "ModelNotFound",
    "InvalidOption",
    "UnknownCommand",
    "InsufficientFunds",
    "RateUnavailable",
    "SubmitError",
    "TrackingFailed",
    "TrackingTimeout",
    "JobCanceled",
    "DeliveryError",
    "InternalError",
]
