"""database/db_manager.py — PostgreSQL-backed StateStore (asyncpg).

Selected with ``STATE_BACKEND=postgres``.  The DSN is assembled from
``DB_HOST`` / ``DB_PORT`` / ``DB_NAME`` / ``DB_USER`` / ``DB_PASS``; only the
redacted form is ever logged.
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, List, Optional, Tuple

import asyncpg

from core.errors import PersistenceError, StaleLedgerError
from database.base_store import StateStore
from models.ledger import (
    AgentId,
    BalanceSnapshot,
    LedgerDelta,
    LedgerState,
    MonthlyReport,
    SentimentReading,
    SnapshotKind,
    Trade,
)

logger = logging.getLogger(__name__)

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_state (
    id               SMALLINT PRIMARY KEY CHECK (id = 1),
    agent_a_balance  DOUBLE PRECISION NOT NULL,
    agent_b_balance  DOUBLE PRECISION NOT NULL,
    cycle_number     INTEGER NOT NULL,
    cycle_target     DOUBLE PRECISION NOT NULL,
    agent_b_enabled  BOOLEAN NOT NULL DEFAULT FALSE,
    last_reset       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS trades (
    id              BIGSERIAL PRIMARY KEY,
    agent           TEXT NOT NULL,
    pair            TEXT NOT NULL,
    side            TEXT NOT NULL,
    size            DOUBLE PRECISION NOT NULL,
    entry_price     DOUBLE PRECISION NOT NULL,
    exit_price      DOUBLE PRECISION,
    pnl             DOUBLE PRECISION NOT NULL DEFAULT 0,
    usd_amount      DOUBLE PRECISION,
    mcs             DOUBLE PRECISION,
    execution_mode  TEXT NOT NULL,
    order_id        TEXT,
    timestamp       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ix_trades_agent_ts ON trades(agent, timestamp);

CREATE TABLE IF NOT EXISTS sentiment_readings (
    id           BIGSERIAL PRIMARY KEY,
    fgi_value    INTEGER NOT NULL,
    trend_score  DOUBLE PRECISION NOT NULL,
    mcs          DOUBLE PRECISION NOT NULL,
    timestamp    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ix_sentiment_ts ON sentiment_readings(timestamp DESC);

CREATE TABLE IF NOT EXISTS monthly_reports (
    month_key        TEXT PRIMARY KEY,
    start_balance    DOUBLE PRECISION NOT NULL,
    end_balance      DOUBLE PRECISION NOT NULL,
    donation_amount  DOUBLE PRECISION NOT NULL,
    total_trades     INTEGER NOT NULL DEFAULT 0,
    total_pnl        DOUBLE PRECISION NOT NULL DEFAULT 0,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS balance_snapshots (
    kind             TEXT NOT NULL,
    period_key       TEXT NOT NULL,
    exchange_usd     DOUBLE PRECISION,
    agent_a_balance  DOUBLE PRECISION NOT NULL,
    agent_b_balance  DOUBLE PRECISION NOT NULL,
    captured_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (kind, period_key)
);
"""

_SEED_INSERT = """
INSERT INTO ledger_state
    (id, agent_a_balance, agent_b_balance, cycle_number, cycle_target, agent_b_enabled, last_reset)
VALUES (1, $1, $2, $3, $4, $5, $6)
ON CONFLICT (id) DO NOTHING;
"""

_LEDGER_UPDATE = """
UPDATE ledger_state SET
    agent_a_balance = COALESCE($1::double precision, agent_a_balance) + $2,
    agent_b_balance = agent_b_balance + $3,
    cycle_number    = cycle_number + $4,
    cycle_target    = cycle_target + $5,
    agent_b_enabled = agent_b_enabled OR $6,
    last_reset      = CASE WHEN $7 THEN NOW() ELSE last_reset END,
    updated_at      = NOW()
WHERE id = 1 AND ($8::integer IS NULL OR cycle_number = $8::integer)
RETURNING agent_a_balance, agent_b_balance, cycle_number, cycle_target,
          agent_b_enabled, last_reset;
"""


def _ledger_from_record(row: Any) -> LedgerState:
    return LedgerState(
        agent_a_balance=row["agent_a_balance"],
        agent_b_balance=row["agent_b_balance"],
        cycle_number=row["cycle_number"],
        cycle_target=row["cycle_target"],
        agent_b_enabled=row["agent_b_enabled"],
        last_reset=row["last_reset"],
    )


def _trade_from_record(row: Any) -> Trade:
    return Trade(**{key: row[key] for key in row.keys()})


def _report_from_record(row: Any) -> MonthlyReport:
    return MonthlyReport(**{key: row[key] for key in row.keys()})


class DBManager(StateStore):
    backend = "postgres"

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: int = 5432,
        name: str = "charity_bot",
        user: str = "charity_bot",
        password: str = "",
        pool_min: int = 1,
        pool_max: int = 10,
        command_timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.name = name
        self.user = user
        self.password = password
        self.pool_min = pool_min
        self.pool_max = pool_max
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None
        self._db_lock = asyncio.Lock()

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"

    @property
    def _redacted_dsn(self) -> str:
        """Log-safe DSN with the password replaced by '***'."""
        return re.sub(r":(.[^:@]*)@", ":***@", self.dsn, count=1)

    async def connect(self) -> None:
        if self._pool is not None:
            return
        async with self._db_lock:
            if self._pool is not None:
                return
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=self.pool_min,
                    max_size=self.pool_max,
                    command_timeout=self.command_timeout,
                )
            except _DB_ERRORS as exc:
                raise PersistenceError(f"Cannot connect to {self._redacted_dsn}: {exc}") from exc
            await self.ensure_schema()
            logger.info("DBManager connected to %s", self._redacted_dsn)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Schema creation failed: {exc}") from exc

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise PersistenceError("DB pool is not initialized")
        return self._pool

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    @staticmethod
    async def _insert_seed(conn: asyncpg.Connection) -> None:
        seed = LedgerState.seed()
        await conn.execute(
            _SEED_INSERT,
            seed.agent_a_balance,
            seed.agent_b_balance,
            seed.cycle_number,
            seed.cycle_target,
            seed.agent_b_enabled,
            seed.last_reset,
        )

    @staticmethod
    async def _apply_delta(conn: asyncpg.Connection, delta: LedgerDelta) -> LedgerState:
        row = await conn.fetchrow(
            _LEDGER_UPDATE,
            delta.set_agent_a_balance,
            delta.agent_a_balance_change,
            delta.agent_b_balance_change,
            delta.cycle_number_increment,
            delta.cycle_target_increment,
            delta.enable_agent_b,
            delta.touch_reset,
            delta.expected_cycle_number,
        )
        if row is None:
            raise StaleLedgerError(
                f"ledger no longer on cycle {delta.expected_cycle_number}; update rejected"
            )
        return _ledger_from_record(row)

    async def read_latest_ledger_state(self) -> LedgerState:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._insert_seed(conn)
                    row = await conn.fetchrow(
                        """
                        SELECT agent_a_balance, agent_b_balance, cycle_number, cycle_target,
                               agent_b_enabled, last_reset
                        FROM ledger_state WHERE id = 1;
                        """
                    )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Ledger read failed: {exc}") from exc
        return _ledger_from_record(row)

    async def write_ledger_state(self, delta: LedgerDelta) -> LedgerState:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._insert_seed(conn)
                    return await self._apply_delta(conn, delta)
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Ledger update failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def append_trade(self, trade: Trade, delta: Optional[LedgerDelta] = None) -> Trade:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    trade_id = await conn.fetchval(
                        """
                        INSERT INTO trades
                            (agent, pair, side, size, entry_price, exit_price, pnl,
                             usd_amount, mcs, execution_mode, order_id, timestamp)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                        RETURNING id;
                        """,
                        trade.agent.value,
                        trade.pair,
                        trade.side.value,
                        trade.size,
                        trade.entry_price,
                        trade.exit_price,
                        trade.pnl,
                        trade.usd_amount,
                        trade.mcs,
                        trade.execution_mode.value,
                        trade.order_id,
                        trade.timestamp,
                    )
                    if delta is not None and not delta.is_empty:
                        await self._insert_seed(conn)
                        await self._apply_delta(conn, delta)
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Trade insert failed: {exc}") from exc
        return trade.model_copy(update={"id": trade_id})

    async def list_trades(
        self, agent: AgentId, since: datetime, until: Optional[datetime] = None
    ) -> List[Trade]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, agent, pair, side, size, entry_price, exit_price, pnl,
                           usd_amount, mcs, execution_mode, order_id, timestamp
                    FROM trades
                    WHERE agent = $1 AND timestamp >= $2
                      AND ($3::timestamptz IS NULL OR timestamp < $3::timestamptz)
                    ORDER BY timestamp ASC, id ASC;
                    """,
                    agent.value,
                    since,
                    until,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Trade query failed: {exc}") from exc
        return [_trade_from_record(r) for r in rows]

    async def count_trades_since(self, agent: AgentId, since: datetime) -> int:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                count = await conn.fetchval(
                    "SELECT COUNT(*) FROM trades WHERE agent = $1 AND timestamp >= $2;",
                    agent.value,
                    since,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Trade count failed: {exc}") from exc
        return int(count or 0)

    # ------------------------------------------------------------------
    # Sentiment
    # ------------------------------------------------------------------

    async def append_sentiment_reading(self, reading: SentimentReading) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO sentiment_readings (fgi_value, trend_score, mcs, timestamp)
                    VALUES ($1, $2, $3, $4);
                    """,
                    reading.fgi_value,
                    reading.trend_score,
                    reading.mcs,
                    reading.timestamp,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Sentiment insert failed: {exc}") from exc

    async def read_latest_sentiment_reading(self) -> Optional[SentimentReading]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT fgi_value, trend_score, mcs, timestamp
                    FROM sentiment_readings ORDER BY timestamp DESC, id DESC LIMIT 1;
                    """
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Sentiment read failed: {exc}") from exc
        return SentimentReading(**dict(row)) if row else None

    async def list_sentiment_readings(self, since: datetime) -> List[SentimentReading]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT fgi_value, trend_score, mcs, timestamp
                    FROM sentiment_readings WHERE timestamp >= $1 ORDER BY timestamp ASC;
                    """,
                    since,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Sentiment query failed: {exc}") from exc
        return [SentimentReading(**dict(r)) for r in rows]

    async def prune_sentiment_readings(self, keep: int) -> int:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(
                    """
                    DELETE FROM sentiment_readings
                    WHERE id NOT IN (
                        SELECT id FROM sentiment_readings
                        ORDER BY timestamp DESC, id DESC
                        LIMIT $1
                    );
                    """,
                    keep,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Sentiment prune failed: {exc}") from exc
        # asyncpg returns the command tag, e.g. "DELETE 12"
        return int(status.split()[-1]) if status else 0

    # ------------------------------------------------------------------
    # Monthly reports
    # ------------------------------------------------------------------

    async def read_monthly_report(self, month_key: str) -> Optional[MonthlyReport]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM monthly_reports WHERE month_key = $1;", month_key
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Monthly report read failed: {exc}") from exc
        return _report_from_record(row) if row else None

    async def read_or_create_monthly_report(
        self, report: MonthlyReport
    ) -> Tuple[MonthlyReport, bool]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO monthly_reports
                            (month_key, start_balance, end_balance, donation_amount,
                             total_trades, total_pnl, created_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (month_key) DO NOTHING
                        RETURNING month_key;
                        """,
                        report.month_key,
                        report.start_balance,
                        report.end_balance,
                        report.donation_amount,
                        report.total_trades,
                        report.total_pnl,
                        report.created_at,
                    )
                    row = await conn.fetchrow(
                        "SELECT * FROM monthly_reports WHERE month_key = $1;", report.month_key
                    )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Monthly report insert failed: {exc}") from exc
        return _report_from_record(row), inserted is not None

    # ------------------------------------------------------------------
    # Balance snapshots
    # ------------------------------------------------------------------

    async def save_balance_snapshot(self, snapshot: BalanceSnapshot) -> bool:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                inserted = await conn.fetchval(
                    """
                    INSERT INTO balance_snapshots
                        (kind, period_key, exchange_usd, agent_a_balance, agent_b_balance, captured_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (kind, period_key) DO NOTHING
                    RETURNING period_key;
                    """,
                    snapshot.kind.value,
                    snapshot.period_key,
                    snapshot.exchange_usd,
                    snapshot.agent_a_balance,
                    snapshot.agent_b_balance,
                    snapshot.captured_at,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Snapshot insert failed: {exc}") from exc
        return inserted is not None

    async def read_balance_snapshot(
        self, kind: SnapshotKind, period_key: str
    ) -> Optional[BalanceSnapshot]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM balance_snapshots WHERE kind = $1 AND period_key = $2;",
                    kind.value,
                    period_key,
                )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Snapshot read failed: {exc}") from exc
        return BalanceSnapshot(**dict(row)) if row else None
