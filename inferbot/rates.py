"""USD exchange rate for the balance currency, cached with a stale fallback."""

from __future__ import annotations

import threading
import time
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Callable, Optional, Tuple

import requests

from .errors import RateUnavailable
from .logs import log_event
from .schemas import RateSnapshot

DEFAULT_SOURCE_URL = "https://api.coingecko.com/api/v3/simple/price"
FETCH_TIMEOUT = 5


class RateOracle:
    """Caches one :class:`RateSnapshot` and refreshes it after ``ttl`` seconds.

    When a refresh fails the cached snapshot is still served until it is
    ``stale_factor * ttl`` old; past that :class:`RateUnavailable` is raised.
    Readers never lock: they grab the current snapshot reference, which is
    replaced wholesale by the single refreshing thread.
    """

    def __init__(
        self,
        source_url: str = DEFAULT_SOURCE_URL,
        coin_id: str = "decred",
        ttl: float = 300.0,
        stale_factor: float = 2.0,
        atoms_per_unit: int = 100_000_000,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.source_url = source_url
        self.coin_id = coin_id
        self.ttl = ttl
        self.max_age = ttl * stale_factor
        self.atoms_per_unit = atoms_per_unit
        self.session = session or requests.Session()
        self._clock = clock
        self._snapshot: Optional[RateSnapshot] = None
        self._refresh_lock = threading.Lock()

    def fetch(self) -> RateSnapshot:
        resp = self.session.get(
            self.source_url,
            params={"ids": self.coin_id, "vs_currencies": "usd,btc"},
            timeout=FETCH_TIMEOUT,
        )
        resp.raise_for_status()
        payload = resp.json()
        quote = payload.get(self.coin_id) if isinstance(payload, dict) else None
        if not isinstance(quote, dict):
            raise ValueError(f"rate payload has no quote object for {self.coin_id}")
        try:
            usd = Decimal(str(quote["usd"]))
        except (KeyError, InvalidOperation) as exc:
            raise ValueError(f"rate payload missing usd price for {self.coin_id}") from exc
        if usd <= 0:
            raise ValueError(f"non-positive usd rate {usd}")
        btc = quote.get("btc")
        return RateSnapshot(
            usd_per_unit=usd,
            quoted_at=self._clock(),
            btc_per_unit=Decimal(str(btc)) if btc is not None else None,
        )

    def snapshot(self) -> RateSnapshot:
        current = self._snapshot
        if current is not None and current.age(self._clock()) < self.ttl:
            return current
        with self._refresh_lock:
            current = self._snapshot
            if current is not None and current.age(self._clock()) < self.ttl:
                return current
            try:
                fresh = self.fetch()
            except (requests.RequestException, ValueError) as exc:
                if current is not None and current.age(self._clock()) <= self.max_age:
                    log_event("Serving stale exchange rate", level="warning", error=str(exc), age=round(current.age(self._clock()), 1))
                    return current
                log_event("Exchange rate unavailable", level="error", error=str(exc))
                raise RateUnavailable(str(exc)) from exc
            self._snapshot = fresh
            log_event("Exchange rate refreshed", usd=str(fresh.usd_per_unit), btc=str(fresh.btc_per_unit))
            return fresh

    def set_snapshot(self, snapshot: RateSnapshot) -> None:
        with self._refresh_lock:
            self._snapshot = snapshot

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def usd_to_atoms(self, usd: Decimal, snapshot: Optional[RateSnapshot] = None) -> Tuple[int, RateSnapshot]:
        snap = snapshot or self.snapshot()
        return usd_to_atoms(usd, snap, self.atoms_per_unit), snap

    def atoms_to_usd(self, atoms: int, snapshot: Optional[RateSnapshot] = None) -> Decimal:
        snap = snapshot or self.snapshot()
        return atoms_to_usd(atoms, snap, self.atoms_per_unit)

    def quote(self, usd: Decimal) -> Tuple[int, RateSnapshot]:
        return self.usd_to_atoms(usd)


def usd_to_atoms(usd: Decimal, snapshot: RateSnapshot, atoms_per_unit: int) -> int:
    """Atoms needed to cover ``usd``, rounded up so the ledger never undercharges."""

    units = Decimal(usd) / snapshot.usd_per_unit
    return int((units * atoms_per_unit).to_integral_value(rounding=ROUND_CEILING))


def atoms_to_usd(atoms: int, snapshot: RateSnapshot, atoms_per_unit: int) -> Decimal:
    return Decimal(atoms) / Decimal(atoms_per_unit) * snapshot.usd_per_unit


def format_units(atoms: int, atoms_per_unit: int, places: int = 8) -> str:
    return f"{Decimal(atoms) / Decimal(atoms_per_unit):.{places}f}"


__all__ = ["RateOracle", "usd_to_atoms", "atoms_to_usd", "format_units"]
