from __future__ import annotations

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from .errors import InsufficientFunds
from .ledger import BalanceLedger
from .logs import log_event
from .rates import RateOracle
from .schemas import RateSnapshot


@dataclass
class Authorization:
    """Atoms taken from one user for one job, refundable exactly once."""

    user_id: str
    price_usd: Decimal
    debit_atoms: int
    snapshot: Optional[RateSnapshot]
    balance_after: int
    job_id: str = ""
    refunded: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def charged(self) -> bool:
        return self.debit_atoms > 0


class BillingCoordinator:
    def __init__(self, ledger: BalanceLedger, oracle: RateOracle, enabled: bool = True) -> None:
        self.ledger = ledger
        self.oracle = oracle
        self.enabled = enabled

    def authorize_and_debit(self, user_id: str, price_usd: Decimal, job_id: str = "") -> Authorization:
        """Convert ``price_usd`` to atoms at the current rate and debit them.

        Raises :class:`InsufficientFunds` (nothing debited) or
        :class:`RateUnavailable`.
        """

        if not self.enabled:
            return Authorization(user_id, price_usd, 0, None, 0, job_id)
        atoms, snapshot = self.oracle.usd_to_atoms(price_usd)
        ok, balance = self.ledger.debit(user_id, atoms, job_id=job_id)
        if not ok:
            log_event("Insufficient balance", level="info", user_id=user_id, balance=balance, required=atoms, job_id=job_id)
            raise InsufficientFunds(balance, atoms, price_usd)
        return Authorization(user_id, price_usd, atoms, snapshot, balance, job_id)

    def refund(self, authorization: Authorization, reason: str = "") -> int:
        """Credit back ``debit_atoms``. Returns the atoms refunded (0 on repeat calls)."""

        with authorization._lock:
            if authorization.refunded or not authorization.charged:
                return 0
            authorization.refunded = True
        self.ledger.refund(
            authorization.user_id,
            authorization.debit_atoms,
            job_id=authorization.job_id,
            reason=reason,
        )
        return authorization.debit_atoms

    def credit_tip(self, user_id: str, atoms: int, sequence_id: Optional[int] = None) -> int:
        """Deposit a tip. Tips are credited even while billing is disabled."""

        reason = f"tip {sequence_id}" if sequence_id is not None else "tip"
        return self.ledger.deposit(user_id, atoms, reason=reason)

    def balance(self, user_id: str) -> int:
        return self.ledger.get(user_id)


__all__ = ["Authorization", "BillingCoordinator"]
