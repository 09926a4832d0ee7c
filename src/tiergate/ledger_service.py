"""TransactionLedger: append-only transaction record plus daily aggregates.

The only cross-request mutable state in the service. Writes for one UTC
date are serialized by a per-date asyncio lock and handed to the backend's
atomic ``commit``; reads for display may lag.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from tiergate.constants import LEDGER_WINDOW
from tiergate.ledger import (
    DailyStats,
    Transaction,
    date_key,
    quality_distribution,
)

if TYPE_CHECKING:
    from tiergate.ledger_backend import LedgerBackend

logger = logging.getLogger(__name__)


class TransactionLedger:
    """Records completed requests and answers analytics queries."""

    def __init__(self, backend: LedgerBackend, window: int = LEDGER_WINDOW) -> None:
        self._backend = backend
        self._window = window
        self._locks: dict[str, asyncio.Lock] = {}
        self._recorded = 0

    def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create a per-date lock."""
        if key not in self._locks:
            # Only today's (and at most yesterday's) lock is ever contended.
            if len(self._locks) > 4:
                self._locks = {k: v for k, v in self._locks.items() if v.locked()}
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def record(
        self,
        tier: str,
        cost: Decimal,
        charged: bool,
        quality: float,
        now: datetime | None = None,
    ) -> tuple[Transaction, DailyStats]:
        """Create an immutable Transaction and fold it into its day's stats."""
        tx = Transaction.create(tier, cost, charged, quality, timestamp=now)
        async with self._get_lock(tx.date_key):
            stats = await self._backend.commit(tx)
        self._recorded += 1
        logger.info(
            "Recorded %s transaction %s (%s, cost=%s, quality=%.2f).",
            tx.status, tx.id, tier, tx.cost, quality,
        )
        return tx, stats

    async def daily(self, key: str | None = None) -> DailyStats:
        """Stats for a UTC date (default today); a fresh zero record if none."""
        key = key or date_key()
        stats = await self._backend.get_daily(key)
        return stats if stats is not None else DailyStats(date=key)

    async def recent(self, limit: int | None = None) -> list[Transaction]:
        """Newest-first transactions, bounded by the display window."""
        if limit is None or limit > self._window:
            limit = self._window
        return await self._backend.recent(limit)

    async def summary(self, daily_limit: Decimal | None = None, recent_limit: int = 20) -> dict[str, Any]:
        """Today's stats, all-time totals and the recent quality distribution.

        ``daily_limit`` is reported for display only; nothing enforces it.
        """
        today = await self.daily()
        totals = await self._backend.totals()
        recent = await self.recent(recent_limit)

        result: dict[str, Any] = {
            "success": True,
            "today": today.to_dict(),
            "allTime": totals.to_dict(),
            "qualityDistribution": quality_distribution(recent),
            "recentTransactions": [tx.to_dict() for tx in recent],
        }
        if daily_limit is not None:
            used = (today.total_spent / daily_limit) if daily_limit > 0 else Decimal("0")
            result["dailyLimit"] = {
                "limit": str(daily_limit),
                "spent": str(today.total_spent),
                "usedFraction": float(min(used, Decimal("1"))),
                "enforced": False,
            }
        return result

    def health(self) -> dict[str, object]:
        """Return ledger health metrics for monitoring."""
        return {
            "backend": type(self._backend).__name__,
            "window": self._window,
            "recorded_since_start": self._recorded,
            "active_date_locks": len(self._locks),
        }
