from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

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


class StateStore(ABC):
    """Durable storage for the ledger row and the append-only logs.

    Every method raises :class:`core.errors.PersistenceError` on failure.
    Writes that touch more than one row commit in a single transaction.
    """

    backend: str = "store"

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and create missing tables."""

        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    # ── ledger ────────────────────────────────────────────────────────────

    @abstractmethod
    async def read_latest_ledger_state(self) -> LedgerState:
        """Return the ledger row, inserting the seed row first if absent."""

        raise NotImplementedError

    @abstractmethod
    async def write_ledger_state(self, delta: LedgerDelta) -> LedgerState:
        """Apply *delta* atomically and return the committed row.

        Raises :class:`core.errors.StaleLedgerError` when
        ``delta.expected_cycle_number`` no longer matches.
        """

        raise NotImplementedError

    # ── trades ────────────────────────────────────────────────────────────

    @abstractmethod
    async def append_trade(self, trade: Trade, delta: Optional[LedgerDelta] = None) -> Trade:
        """Insert *trade* and, in the same transaction, apply *delta*."""

        raise NotImplementedError

    @abstractmethod
    async def list_trades(
        self, agent: AgentId, since: datetime, until: Optional[datetime] = None
    ) -> List[Trade]:
        raise NotImplementedError

    @abstractmethod
    async def count_trades_since(self, agent: AgentId, since: datetime) -> int:
        raise NotImplementedError

    # ── sentiment ─────────────────────────────────────────────────────────

    @abstractmethod
    async def append_sentiment_reading(self, reading: SentimentReading) -> None:
        raise NotImplementedError

    @abstractmethod
    async def read_latest_sentiment_reading(self) -> Optional[SentimentReading]:
        raise NotImplementedError

    @abstractmethod
    async def list_sentiment_readings(self, since: datetime) -> List[SentimentReading]:
        raise NotImplementedError

    @abstractmethod
    async def prune_sentiment_readings(self, keep: int) -> int:
        """Delete all but the newest *keep* readings; return rows removed."""

        raise NotImplementedError

    # ── monthly reports ───────────────────────────────────────────────────

    @abstractmethod
    async def read_monthly_report(self, month_key: str) -> Optional[MonthlyReport]:
        raise NotImplementedError

    @abstractmethod
    async def read_or_create_monthly_report(
        self, report: MonthlyReport
    ) -> Tuple[MonthlyReport, bool]:
        """Insert *report* unless its month exists; return (stored, created)."""

        raise NotImplementedError

    # ── balance snapshots ─────────────────────────────────────────────────

    @abstractmethod
    async def save_balance_snapshot(self, snapshot: BalanceSnapshot) -> bool:
        """Insert-if-absent keyed on (kind, period_key); True when inserted."""

        raise NotImplementedError

    @abstractmethod
    async def read_balance_snapshot(
        self, kind: SnapshotKind, period_key: str
    ) -> Optional[BalanceSnapshot]:
        raise NotImplementedError
