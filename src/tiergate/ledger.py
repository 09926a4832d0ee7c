"""Transaction and daily-spend records.

Pure data model, no I/O. Amounts are ``Decimal`` currency units; they are
serialized as strings so no precision is lost in a JSON or SQL store.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def date_key(moment: datetime | date | None = None) -> str:
    """UTC calendar-date key (``YYYY-MM-DD``) for a moment; defaults to now."""
    if moment is None:
        moment = utc_now()
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc).date()
    return moment.isoformat()


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Unparseable amount %r in ledger data; using 0.", value)
        return ZERO


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transaction:
    """Immutable record of one completed request."""

    id: str
    tier: str
    cost: Decimal  # 0 for free requests
    charged: bool
    quality: float
    timestamp: datetime

    @classmethod
    def create(
        cls,
        tier: str,
        cost: Decimal,
        charged: bool,
        quality: float,
        timestamp: datetime | None = None,
    ) -> Transaction:
        return cls(
            id=uuid.uuid4().hex,
            tier=tier,
            cost=cost if charged else ZERO,
            charged=charged,
            quality=quality,
            timestamp=timestamp or utc_now(),
        )

    @property
    def date_key(self) -> str:
        return date_key(self.timestamp)

    @property
    def status(self) -> str:
        return "charged" if self.charged else "free"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier,
            "cost": str(self.cost),
            "charged": self.charged,
            "status": self.status,
            "quality": self.quality,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        raw_ts = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if raw_ts else utc_now()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            id=str(data.get("id", "")),
            tier=str(data.get("tier", "standard")),
            cost=_decimal(data.get("cost", "0")),
            charged=bool(data.get("charged", False)),
            quality=float(data.get("quality", 0.0)),
            timestamp=timestamp,
        )


# ---------------------------------------------------------------------------
# DailyStats
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailyStats:
    """Aggregate counters for one UTC calendar date.

    A new date starts from a fresh zero record; earlier dates are kept.
    """

    date: str
    total_spent: Decimal = ZERO
    requests_today: int = 0
    charged_requests: int = 0
    free_requests: int = 0

    def with_transaction(self, tx: Transaction) -> DailyStats:
        """Return a new record with ``tx`` counted."""
        if tx.date_key != self.date:
            raise ValueError(f"Transaction dated {tx.date_key} does not belong to {self.date}")
        if tx.charged:
            return replace(
                self,
                total_spent=self.total_spent + tx.cost,
                requests_today=self.requests_today + 1,
                charged_requests=self.charged_requests + 1,
            )
        return replace(
            self,
            requests_today=self.requests_today + 1,
            free_requests=self.free_requests + 1,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "totalSpent": str(self.total_spent),
            "requestsToday": self.requests_today,
            "chargedRequests": self.charged_requests,
            "freeRequests": self.free_requests,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DailyStats:
        return cls(
            date=str(data.get("date", "")),
            total_spent=_decimal(data.get("totalSpent", "0")),
            requests_today=int(data.get("requestsToday", 0)),
            charged_requests=int(data.get("chargedRequests", 0)),
            free_requests=int(data.get("freeRequests", 0)),
        )


# ---------------------------------------------------------------------------
# LedgerTotals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerTotals:
    """All-time aggregates. Unaffected by display-window truncation."""

    total_spent: Decimal = ZERO
    requests: int = 0
    charged_requests: int = 0

    def with_transaction(self, tx: Transaction) -> LedgerTotals:
        return LedgerTotals(
            total_spent=self.total_spent + (tx.cost if tx.charged else ZERO),
            requests=self.requests + 1,
            charged_requests=self.charged_requests + (1 if tx.charged else 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSpent": str(self.total_spent),
            "requests": self.requests,
            "chargedRequests": self.charged_requests,
        }


# ---------------------------------------------------------------------------
# Quality distribution
# ---------------------------------------------------------------------------

QUALITY_BUCKETS: tuple[tuple[str, int, int], ...] = (
    ("excellent", 90, 100),
    ("good", 80, 89),
    ("average", 70, 79),
    ("low", 0, 69),
)


def quality_distribution(transactions: list[Transaction]) -> dict[str, dict[str, float]]:
    """Bucket transactions by quality percentage (quality × 100, rounded)."""
    counts = {name: 0 for name, _, _ in QUALITY_BUCKETS}
    for tx in transactions:
        pct = round(tx.quality * 100)
        for name, low, high in QUALITY_BUCKETS:
            if low <= pct <= high:
                counts[name] += 1
                break
    total = len(transactions)
    return {
        name: {
            "count": count,
            "percentage": round(count / total * 100, 1) if total else 0.0,
        }
        for name, count in counts.items()
    }
