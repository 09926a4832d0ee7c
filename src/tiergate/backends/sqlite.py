"""SQLite ledger backend.

A file-backed store that keeps every transaction. ``commit`` runs inside a
``BEGIN IMMEDIATE`` transaction, so concurrent writers (threads or
processes) on the same date serialize instead of losing updates.
Blocking sqlite calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from tiergate.ledger import ZERO, DailyStats, LedgerTotals, Transaction

_SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    tier TEXT NOT NULL,
    cost TEXT NOT NULL,
    charged INTEGER NOT NULL,
    quality REAL NOT NULL,
    timestamp TEXT NOT NULL,
    date_key TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions (timestamp);
CREATE TABLE IF NOT EXISTS daily_stats (
    date_key TEXT PRIMARY KEY,
    total_spent TEXT NOT NULL,
    requests_today INTEGER NOT NULL,
    charged_requests INTEGER NOT NULL,
    free_requests INTEGER NOT NULL
);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are explicit."""
    conn = sqlite3.connect(str(Path(db_path)), isolation_level=None, timeout=30.0)
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _row_to_tx(row: tuple) -> Transaction:
    return Transaction(
        id=row[0],
        tier=row[1],
        cost=Decimal(row[2]),
        charged=bool(row[3]),
        quality=float(row[4]),
        timestamp=datetime.fromisoformat(row[5]),
    )


def _row_to_daily(row: tuple) -> DailyStats:
    return DailyStats(
        date=row[0],
        total_spent=Decimal(row[1]),
        requests_today=int(row[2]),
        charged_requests=int(row[3]),
        free_requests=int(row[4]),
    )


class SqliteLedgerBackend:
    """``LedgerBackend`` persisted to a SQLite file."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        conn = get_connection(db_path)
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    # -- sync helpers (run in a worker thread) --------------------------------

    @staticmethod
    def _insert_tx(conn: sqlite3.Connection, tx: Transaction) -> None:
        conn.execute(
            "INSERT INTO transactions (id, tier, cost, charged, quality, timestamp, date_key) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                tx.id, tx.tier, str(tx.cost), int(tx.charged), tx.quality,
                tx.timestamp.isoformat(timespec="microseconds"), tx.date_key,
            ),
        )

    @staticmethod
    def _fetch_daily(conn: sqlite3.Connection, date_key: str) -> DailyStats | None:
        row = conn.execute(
            "SELECT date_key, total_spent, requests_today, charged_requests, free_requests "
            "FROM daily_stats WHERE date_key = ?",
            (date_key,),
        ).fetchone()
        return _row_to_daily(row) if row else None

    @staticmethod
    def _store_daily(conn: sqlite3.Connection, stats: DailyStats) -> None:
        conn.execute(
            "INSERT INTO daily_stats "
            "(date_key, total_spent, requests_today, charged_requests, free_requests) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(date_key) DO UPDATE SET "
            "total_spent = excluded.total_spent, "
            "requests_today = excluded.requests_today, "
            "charged_requests = excluded.charged_requests, "
            "free_requests = excluded.free_requests",
            (
                stats.date, str(stats.total_spent), stats.requests_today,
                stats.charged_requests, stats.free_requests,
            ),
        )

    def _run(self, fn, *args):
        conn = get_connection(self._db_path)
        try:
            return fn(conn, *args)
        finally:
            conn.close()

    def _commit_sync(self, conn: sqlite3.Connection, tx: Transaction) -> DailyStats:
        conn.execute("BEGIN IMMEDIATE")
        try:
            current = self._fetch_daily(conn, tx.date_key) or DailyStats(date=tx.date_key)
            updated = current.with_transaction(tx)
            self._insert_tx(conn, tx)
            self._store_daily(conn, updated)
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        return updated

    @staticmethod
    def _recent_sync(conn: sqlite3.Connection, limit: int) -> list[Transaction]:
        rows = conn.execute(
            "SELECT id, tier, cost, charged, quality, timestamp FROM transactions "
            "ORDER BY timestamp DESC LIMIT ?",
            (max(0, limit),),
        ).fetchall()
        return [_row_to_tx(r) for r in rows]

    @staticmethod
    def _totals_sync(conn: sqlite3.Connection) -> LedgerTotals:
        requests, charged = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(charged), 0) FROM transactions"
        ).fetchone()
        spent = sum(
            (Decimal(row[0]) for row in conn.execute(
                "SELECT cost FROM transactions WHERE charged = 1"
            )),
            ZERO,
        )
        return LedgerTotals(total_spent=spent, requests=int(requests), charged_requests=int(charged))

    # -- LedgerBackend protocol -----------------------------------------------

    async def append(self, tx: Transaction) -> None:
        await asyncio.to_thread(self._run, self._insert_tx, tx)

    async def get_daily(self, date_key: str) -> DailyStats | None:
        return await asyncio.to_thread(self._run, self._fetch_daily, date_key)

    async def set_daily(self, date_key: str, stats: DailyStats) -> None:
        if stats.date != date_key:
            raise ValueError(f"DailyStats dated {stats.date} stored under {date_key}")
        await asyncio.to_thread(self._run, self._store_daily, stats)

    async def commit(self, tx: Transaction) -> DailyStats:
        return await asyncio.to_thread(self._run, self._commit_sync, tx)

    async def recent(self, limit: int) -> list[Transaction]:
        return await asyncio.to_thread(self._run, self._recent_sync, limit)

    async def totals(self) -> LedgerTotals:
        return await asyncio.to_thread(self._run, self._totals_sync)
