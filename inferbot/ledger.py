"""Per-user balance ledger in integer atoms, backed by SQLite."""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .logs import log_event

SCHEMA = """
CREATE TABLE IF NOT EXISTS balances (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    total_deposited INTEGER NOT NULL DEFAULT 0,
    total_spent INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS ledger_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    delta INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    job_id TEXT,
    reason TEXT,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_events_user ON ledger_events(user_id);
"""


class BalanceLedger:
    """Integer-atom balances with an atomic, never-negative ``add_delta``.

    A single connection is shared between threads; statements are serialised
    by ``_db_lock`` and debits for one user are additionally serialised by a
    per-user lock so a balance check and its update see the same row.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:") -> None:
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.RLock()
        self._user_locks: Dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()
        with self._db_lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._db_lock:
            self._conn.close()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> int:
        with self._db_lock:
            row = self._conn.execute("SELECT balance FROM balances WHERE user_id=?", (user_id,)).fetchone()
        return int(row["balance"]) if row else 0

    def add_delta(self, user_id: str, delta: int, kind: str = "adjust", job_id: str = "", reason: str = "") -> Tuple[bool, int]:
        """Apply ``delta`` atoms. Returns ``(applied, balance)``.

        Negative deltas only apply when the balance covers them; otherwise the
        row is left untouched and ``(False, current_balance)`` is returned.
        """

        delta = int(delta)
        now = time.time()
        with self._user_lock(user_id), self._db_lock:
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                if delta >= 0:
                    deposited = delta if kind == "deposit" else 0
                    spent = -delta if kind == "refund" else 0
                    conn.execute(
                        """
                        INSERT INTO balances (user_id, balance, total_deposited, total_spent, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(user_id) DO UPDATE SET
                            balance = balance + excluded.balance,
                            total_deposited = total_deposited + excluded.total_deposited,
                            total_spent = total_spent + excluded.total_spent,
                            updated_at = excluded.updated_at
                        """,
                        (user_id, delta, deposited, spent, now),
                    )
                else:
                    cur = conn.execute(
                        """
                        UPDATE balances
                        SET balance = balance + ?,
                            total_spent = total_spent + ?,
                            updated_at = ?
                        WHERE user_id = ? AND balance >= ?
                        """,
                        (delta, -delta, now, user_id, -delta),
                    )
                    if cur.rowcount == 0:
                        conn.execute("ROLLBACK")
                        return False, self.get(user_id)
                row = conn.execute("SELECT balance FROM balances WHERE user_id=?", (user_id,)).fetchone()
                balance = int(row["balance"])
                conn.execute(
                    """
                    INSERT INTO ledger_events (user_id, kind, delta, balance_after, job_id, reason, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, kind, delta, balance, job_id or None, reason or None, now),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return True, balance

    def deposit(self, user_id: str, atoms: int, reason: str = "") -> int:
        if atoms <= 0:
            return self.get(user_id)
        _, balance = self.add_delta(user_id, atoms, kind="deposit", reason=reason)
        log_event("Balance deposited", user_id=user_id, atoms=atoms, balance=balance, reason=reason)
        return balance

    def debit(self, user_id: str, atoms: int, job_id: str = "") -> Tuple[bool, int]:
        if atoms <= 0:
            return True, self.get(user_id)
        ok, balance = self.add_delta(user_id, -atoms, kind="debit", job_id=job_id)
        if ok:
            log_event("Balance debited", user_id=user_id, atoms=atoms, balance=balance, job_id=job_id)
        return ok, balance

    def refund(self, user_id: str, atoms: int, job_id: str = "", reason: str = "") -> int:
        if atoms <= 0:
            return self.get(user_id)
        _, balance = self.add_delta(user_id, atoms, kind="refund", job_id=job_id, reason=reason)
        log_event("Balance refunded", user_id=user_id, atoms=atoms, balance=balance, job_id=job_id, reason=reason)
        return balance

    def events(self, user_id: str, limit: int = 50) -> List[Dict[str, object]]:
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT kind, delta, balance_after, job_id, reason, created_at FROM ledger_events "
                "WHERE user_id=? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def totals(self, user_id: str) -> Optional[Dict[str, int]]:
        with self._db_lock:
            row = self._conn.execute(
                "SELECT balance, total_deposited, total_spent FROM balances WHERE user_id=?", (user_id,)
            ).fetchone()
        return dict(row) if row else None


__all__ = ["BalanceLedger"]
