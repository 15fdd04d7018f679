"""database/local_store.py — SQLite-backed StateStore.

Same interface as :class:`database.db_manager.DBManager`, selected with
``STATE_BACKEND=sqlite`` (the default).  Uses :mod:`aiosqlite`.

Each call opens its own connection in autocommit mode and, for writes, wraps
its statements in ``BEGIN IMMEDIATE`` / ``COMMIT`` so a trade row and its
ledger update either both land or neither does.  Timestamps are stored as
UTC ISO-8601 strings, which sort chronologically as text.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiosqlite  # type: ignore[import]

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
    utcnow,
)

logger = logging.getLogger(__name__)

# Default path (relative to project root; created on first use)
_DEFAULT_DB_PATH = os.path.join(
    os.path.dirname(os.path.dirname(__file__)), "data", "charity_bot.db"
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ledger_state (
        id               INTEGER PRIMARY KEY CHECK (id = 1),
        agent_a_balance  REAL    NOT NULL,
        agent_b_balance  REAL    NOT NULL,
        cycle_number     INTEGER NOT NULL,
        cycle_target     REAL    NOT NULL,
        agent_b_enabled  INTEGER NOT NULL DEFAULT 0,
        last_reset       TEXT    NOT NULL,
        updated_at       TEXT    NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS trades (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        agent           TEXT    NOT NULL,
        pair            TEXT    NOT NULL,
        side            TEXT    NOT NULL,
        size            REAL    NOT NULL,
        entry_price     REAL    NOT NULL,
        exit_price      REAL,
        pnl             REAL    NOT NULL DEFAULT 0,
        usd_amount      REAL,
        mcs             REAL,
        execution_mode  TEXT    NOT NULL,
        order_id        TEXT,
        timestamp       TEXT    NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_trades_agent_ts ON trades(agent, timestamp);",
    """
    CREATE TABLE IF NOT EXISTS sentiment_readings (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        fgi_value    INTEGER NOT NULL,
        trend_score  REAL    NOT NULL,
        mcs          REAL    NOT NULL,
        timestamp    TEXT    NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_sentiment_ts ON sentiment_readings(timestamp DESC);",
    """
    CREATE TABLE IF NOT EXISTS monthly_reports (
        month_key        TEXT PRIMARY KEY,
        start_balance    REAL    NOT NULL,
        end_balance      REAL    NOT NULL,
        donation_amount  REAL    NOT NULL,
        total_trades     INTEGER NOT NULL DEFAULT 0,
        total_pnl        REAL    NOT NULL DEFAULT 0,
        created_at       TEXT    NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_snapshots (
        kind             TEXT NOT NULL,
        period_key       TEXT NOT NULL,
        exchange_usd     REAL,
        agent_a_balance  REAL NOT NULL,
        agent_b_balance  REAL NOT NULL,
        captured_at      TEXT NOT NULL,
        PRIMARY KEY (kind, period_key)
    );
    """,
)

_LEDGER_UPDATE = """
UPDATE ledger_state SET
    agent_a_balance = COALESCE(?, agent_a_balance) + ?,
    agent_b_balance = agent_b_balance + ?,
    cycle_number    = cycle_number + ?,
    cycle_target    = cycle_target + ?,
    agent_b_enabled = MAX(agent_b_enabled, ?),
    last_reset      = CASE WHEN ? THEN ? ELSE last_reset END,
    updated_at      = ?
WHERE id = 1 AND (? IS NULL OR cycle_number = ?);
"""


def _iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(text: str) -> datetime:
    return datetime.fromisoformat(text)


def _ledger_from_row(row: Any) -> LedgerState:
    return LedgerState(
        agent_a_balance=row["agent_a_balance"],
        agent_b_balance=row["agent_b_balance"],
        cycle_number=row["cycle_number"],
        cycle_target=row["cycle_target"],
        agent_b_enabled=bool(row["agent_b_enabled"]),
        last_reset=_parse(row["last_reset"]),
    )


def _trade_from_row(row: Any) -> Trade:
    return Trade(
        id=row["id"],
        agent=AgentId(row["agent"]),
        pair=row["pair"],
        side=row["side"],
        size=row["size"],
        entry_price=row["entry_price"],
        exit_price=row["exit_price"],
        pnl=row["pnl"],
        usd_amount=row["usd_amount"],
        mcs=row["mcs"],
        execution_mode=row["execution_mode"],
        order_id=row["order_id"],
        timestamp=_parse(row["timestamp"]),
    )


def _reading_from_row(row: Any) -> SentimentReading:
    return SentimentReading(
        fgi_value=row["fgi_value"],
        trend_score=row["trend_score"],
        mcs=row["mcs"],
        timestamp=_parse(row["timestamp"]),
    )


def _report_from_row(row: Any) -> MonthlyReport:
    return MonthlyReport(
        month_key=row["month_key"],
        start_balance=row["start_balance"],
        end_balance=row["end_balance"],
        donation_amount=row["donation_amount"],
        total_trades=row["total_trades"],
        total_pnl=row["total_pnl"],
        created_at=_parse(row["created_at"]),
    )


class LocalStore(StateStore):
    """Async SQLite state store.

    Args:
        db_path: Path for the SQLite file.
                 Defaults to ``<project_root>/data/charity_bot.db``.
    """

    backend = "sqlite"

    def __init__(self, db_path: str = _DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._initialised = False

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        await self._ensure_init()

    async def close(self) -> None:
        # Connections are per call; nothing stays open.
        self._initialised = False

    async def _ensure_init(self) -> None:
        if self._initialised:
            return
        directory = os.path.dirname(self._db_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            async with aiosqlite.connect(self._db_path) as db:
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()
        except (OSError, aiosqlite.Error) as exc:
            raise PersistenceError(f"Cannot initialise SQLite store at {self._db_path}: {exc}") from exc
        self._initialised = True
        logger.info("LocalStore ready at %s", self._db_path)

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[aiosqlite.Connection]:
        await self._ensure_init()
        try:
            async with aiosqlite.connect(self._db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.Error as exc:
            raise PersistenceError(f"SQLite read failed: {exc}") from exc

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        await self._ensure_init()
        try:
            async with aiosqlite.connect(self._db_path, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE;")
                try:
                    yield db
                except BaseException:
                    await db.execute("ROLLBACK;")
                    raise
                await db.execute("COMMIT;")
        except aiosqlite.Error as exc:
            raise PersistenceError(f"SQLite transaction failed: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Ledger                                                               #
    # ------------------------------------------------------------------ #

    @staticmethod
    async def _insert_seed(db: aiosqlite.Connection) -> None:
        seed = LedgerState.seed()
        now = _iso(utcnow())
        cursor = await db.execute(
            """
            INSERT OR IGNORE INTO ledger_state
                (id, agent_a_balance, agent_b_balance, cycle_number, cycle_target,
                 agent_b_enabled, last_reset, updated_at)
            VALUES (1, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                seed.agent_a_balance,
                seed.agent_b_balance,
                seed.cycle_number,
                seed.cycle_target,
                int(seed.agent_b_enabled),
                _iso(seed.last_reset),
                now,
            ),
        )
        if cursor.rowcount == 1:
            logger.info("Initialised ledger with seed row (cycle 1)")

    @staticmethod
    async def _select_ledger(db: aiosqlite.Connection) -> LedgerState:
        async with db.execute("SELECT * FROM ledger_state WHERE id = 1;") as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise PersistenceError("ledger_state row missing after seed insert")
        return _ledger_from_row(row)

    @staticmethod
    async def _apply_delta(db: aiosqlite.Connection, delta: LedgerDelta) -> None:
        now = _iso(utcnow())
        cursor = await db.execute(
            _LEDGER_UPDATE,
            (
                delta.set_agent_a_balance,
                delta.agent_a_balance_change,
                delta.agent_b_balance_change,
                delta.cycle_number_increment,
                delta.cycle_target_increment,
                int(delta.enable_agent_b),
                int(delta.touch_reset),
                now,
                now,
                delta.expected_cycle_number,
                delta.expected_cycle_number,
            ),
        )
        if cursor.rowcount != 1:
            raise StaleLedgerError(
                f"ledger no longer on cycle {delta.expected_cycle_number}; update rejected"
            )

    async def read_latest_ledger_state(self) -> LedgerState:
        async with self._transaction() as db:
            await self._insert_seed(db)
            return await self._select_ledger(db)

    async def write_ledger_state(self, delta: LedgerDelta) -> LedgerState:
        async with self._transaction() as db:
            await self._insert_seed(db)
            await self._apply_delta(db, delta)
            state = await self._select_ledger(db)
        logger.debug("Ledger updated: %s", state)
        return state

    # ------------------------------------------------------------------ #
    # Trades                                                               #
    # ------------------------------------------------------------------ #

    async def append_trade(self, trade: Trade, delta: Optional[LedgerDelta] = None) -> Trade:
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO trades
                    (agent, pair, side, size, entry_price, exit_price, pnl, usd_amount,
                     mcs, execution_mode, order_id, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
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
                    _iso(trade.timestamp),
                ),
            )
            trade_id = cursor.lastrowid
            if delta is not None and not delta.is_empty:
                await self._insert_seed(db)
                await self._apply_delta(db, delta)
        logger.debug("Recorded trade %s for agent %s", trade_id, trade.agent.value)
        return trade.model_copy(update={"id": trade_id})

    async def list_trades(
        self, agent: AgentId, since: datetime, until: Optional[datetime] = None
    ) -> List[Trade]:
        upper = _iso(until) if until is not None else "9999"
        async with self._read() as db:
            async with db.execute(
                """
                SELECT * FROM trades
                WHERE agent = ? AND timestamp >= ? AND timestamp < ?
                ORDER BY timestamp ASC, id ASC;
                """,
                (agent.value, _iso(since), upper),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_trade_from_row(r) for r in rows]

    async def count_trades_since(self, agent: AgentId, since: datetime) -> int:
        async with self._read() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM trades WHERE agent = ? AND timestamp >= ?;",
                (agent.value, _iso(since)),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------ #
    # Sentiment                                                            #
    # ------------------------------------------------------------------ #

    async def append_sentiment_reading(self, reading: SentimentReading) -> None:
        async with self._transaction() as db:
            await db.execute(
                """
                INSERT INTO sentiment_readings (fgi_value, trend_score, mcs, timestamp)
                VALUES (?, ?, ?, ?);
                """,
                (reading.fgi_value, reading.trend_score, reading.mcs, _iso(reading.timestamp)),
            )

    async def read_latest_sentiment_reading(self) -> Optional[SentimentReading]:
        async with self._read() as db:
            async with db.execute(
                "SELECT * FROM sentiment_readings ORDER BY timestamp DESC, id DESC LIMIT 1;"
            ) as cursor:
                row = await cursor.fetchone()
        return _reading_from_row(row) if row else None

    async def list_sentiment_readings(self, since: datetime) -> List[SentimentReading]:
        async with self._read() as db:
            async with db.execute(
                "SELECT * FROM sentiment_readings WHERE timestamp >= ? ORDER BY timestamp ASC;",
                (_iso(since),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_reading_from_row(r) for r in rows]

    async def prune_sentiment_readings(self, keep: int) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                DELETE FROM sentiment_readings
                WHERE id NOT IN (
                    SELECT id FROM sentiment_readings
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                );
                """,
                (keep,),
            )
            removed = cursor.rowcount
        return max(removed, 0)

    # ------------------------------------------------------------------ #
    # Monthly reports                                                      #
    # ------------------------------------------------------------------ #

    async def read_monthly_report(self, month_key: str) -> Optional[MonthlyReport]:
        async with self._read() as db:
            async with db.execute(
                "SELECT * FROM monthly_reports WHERE month_key = ?;", (month_key,)
            ) as cursor:
                row = await cursor.fetchone()
        return _report_from_row(row) if row else None

    async def read_or_create_monthly_report(
        self, report: MonthlyReport
    ) -> Tuple[MonthlyReport, bool]:
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO monthly_reports
                    (month_key, start_balance, end_balance, donation_amount,
                     total_trades, total_pnl, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    report.month_key,
                    report.start_balance,
                    report.end_balance,
                    report.donation_amount,
                    report.total_trades,
                    report.total_pnl,
                    _iso(report.created_at),
                ),
            )
            created = cursor.rowcount == 1
            async with db.execute(
                "SELECT * FROM monthly_reports WHERE month_key = ?;", (report.month_key,)
            ) as select:
                row = await select.fetchone()
        return _report_from_row(row), created

    # ------------------------------------------------------------------ #
    # Balance snapshots                                                    #
    # ------------------------------------------------------------------ #

    async def save_balance_snapshot(self, snapshot: BalanceSnapshot) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO balance_snapshots
                    (kind, period_key, exchange_usd, agent_a_balance, agent_b_balance, captured_at)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    snapshot.kind.value,
                    snapshot.period_key,
                    snapshot.exchange_usd,
                    snapshot.agent_a_balance,
                    snapshot.agent_b_balance,
                    _iso(snapshot.captured_at),
                ),
            )
            return cursor.rowcount == 1

    async def read_balance_snapshot(
        self, kind: SnapshotKind, period_key: str
    ) -> Optional[BalanceSnapshot]:
        async with self._read() as db:
            async with db.execute(
                "SELECT * FROM balance_snapshots WHERE kind = ? AND period_key = ?;",
                (kind.value, period_key),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return BalanceSnapshot(
            kind=SnapshotKind(row["kind"]),
            period_key=row["period_key"],
            exchange_usd=row["exchange_usd"],
            agent_a_balance=row["agent_a_balance"],
            agent_b_balance=row["agent_b_balance"],
            captured_at=_parse(row["captured_at"]),
        )
