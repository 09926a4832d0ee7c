"""Abstract persistence interface for the transaction ledger.

Defines the LedgerBackend Protocol that TransactionLedger depends on.
Concrete implementations live in ``tiergate.backends``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from tiergate.ledger import DailyStats, LedgerTotals, Transaction


@runtime_checkable
class LedgerBackend(Protocol):
    """Async store for transactions and per-date aggregates.

    ``commit`` must append the transaction and fold it into its date's
    DailyStats as one atomic unit, so concurrent writers on the same date
    cannot lose updates. Reads may be eventually consistent.
    """

    async def append(self, tx: Transaction) -> None: ...

    async def get_daily(self, date_key: str) -> DailyStats | None: ...

    async def set_daily(self, date_key: str, stats: DailyStats) -> None: ...

    async def commit(self, tx: Transaction) -> DailyStats: ...

    async def recent(self, limit: int) -> list[Transaction]: ...

    async def totals(self) -> LedgerTotals: ...
