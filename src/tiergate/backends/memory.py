"""In-process ledger backend.

Keeps a bounded window of recent transactions plus running totals, so
truncating the window never changes what was charged.
"""

from __future__ import annotations

import threading
from collections import deque

from tiergate.constants import LEDGER_WINDOW
from tiergate.ledger import DailyStats, LedgerTotals, Transaction


class MemoryLedgerBackend:
    """``LedgerBackend`` held in memory. Lost on restart."""

    def __init__(self, window: int = LEDGER_WINDOW) -> None:
        self._recent: deque[Transaction] = deque(maxlen=window)
        self._daily: dict[str, DailyStats] = {}
        self._totals = LedgerTotals()
        self._lock = threading.Lock()

    def _append_locked(self, tx: Transaction) -> None:
        self._recent.appendleft(tx)
        self._totals = self._totals.with_transaction(tx)

    async def append(self, tx: Transaction) -> None:
        with self._lock:
            self._append_locked(tx)

    async def get_daily(self, date_key: str) -> DailyStats | None:
        with self._lock:
            return self._daily.get(date_key)

    async def set_daily(self, date_key: str, stats: DailyStats) -> None:
        with self._lock:
            self._daily[date_key] = stats

    async def commit(self, tx: Transaction) -> DailyStats:
        key = tx.date_key
        with self._lock:
            current = self._daily.get(key) or DailyStats(date=key)
            updated = current.with_transaction(tx)
            self._append_locked(tx)
            self._daily[key] = updated
            return updated

    async def recent(self, limit: int) -> list[Transaction]:
        with self._lock:
            return list(self._recent)[:max(0, limit)]

    async def totals(self) -> LedgerTotals:
        with self._lock:
            return self._totals
