"""models/ledger.py — persisted records for the two-agent ledger.

LedgerState is the single authoritative row both engines mutate.  Every
mutation is expressed as a :class:`LedgerDelta` so that stores can apply it
in one statement and the same arithmetic can be replayed in memory
(``LedgerState.apply``) for planning and tests.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors import StaleLedgerError
from core.numeric import max_drawdown, mean, round_to, win_rate

# ── seed row ───────────────────────────────────────────────────────────────
INITIAL_AGENT_A_BALANCE = 230.0
INITIAL_AGENT_B_BALANCE = 0.0
INITIAL_CYCLE_NUMBER = 1
INITIAL_CYCLE_TARGET = 200.0

# ── cycle completion ───────────────────────────────────────────────────────
CYCLE_SEED = 30.0
CYCLE_TRANSFER = 200.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def month_key_for(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AgentId(str, Enum):
    A = "A"
    B = "B"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TrendSignal(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class ExecutionMode(str, Enum):
    SIMULATION = "simulation"
    LIVE = "live"


class SnapshotKind(str, Enum):
    START = "start"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerDelta(BaseModel):
    """One atomic change to the ledger row.

    ``set_agent_a_balance`` replaces A's balance before ``agent_a_balance_change``
    is added.  Counters only move forward and ``enable_agent_b`` can only switch
    the flag on.  When ``expected_cycle_number`` is set the write is rejected
    unless the stored row is still on that cycle.
    """

    model_config = ConfigDict(frozen=True)

    set_agent_a_balance: Optional[float] = None
    agent_a_balance_change: float = 0.0
    agent_b_balance_change: float = 0.0
    cycle_number_increment: int = Field(default=0, ge=0)
    cycle_target_increment: float = Field(default=0.0, ge=0)
    enable_agent_b: bool = False
    touch_reset: bool = False
    expected_cycle_number: Optional[int] = None

    @classmethod
    def agent_a_pnl(cls, pnl: float) -> "LedgerDelta":
        return cls(agent_a_balance_change=pnl)

    @classmethod
    def agent_b_pnl(cls, pnl: float) -> "LedgerDelta":
        return cls(agent_b_balance_change=pnl)

    @property
    def is_empty(self) -> bool:
        return (
            self.set_agent_a_balance is None
            and self.agent_a_balance_change == 0
            and self.agent_b_balance_change == 0
            and self.cycle_number_increment == 0
            and self.cycle_target_increment == 0
            and not self.enable_agent_b
            and not self.touch_reset
        )


class LedgerState(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_a_balance: float
    agent_b_balance: float
    cycle_number: int = Field(ge=1)
    cycle_target: float = Field(gt=0)
    agent_b_enabled: bool
    last_reset: datetime

    @classmethod
    def seed(cls, now: datetime | None = None) -> "LedgerState":
        return cls(
            agent_a_balance=INITIAL_AGENT_A_BALANCE,
            agent_b_balance=INITIAL_AGENT_B_BALANCE,
            cycle_number=INITIAL_CYCLE_NUMBER,
            cycle_target=INITIAL_CYCLE_TARGET,
            agent_b_enabled=False,
            last_reset=now or utcnow(),
        )

    @property
    def cycle_progress(self) -> float:
        """Fraction of the current cycle target reached by agent A."""
        return self.agent_a_balance / self.cycle_target

    @property
    def cycle_complete(self) -> bool:
        return self.agent_a_balance >= self.cycle_target

    def apply(self, delta: LedgerDelta, now: datetime | None = None) -> "LedgerState":
        """Return the state after *delta*; mirrors what the stores do in SQL."""
        if (
            delta.expected_cycle_number is not None
            and delta.expected_cycle_number != self.cycle_number
        ):
            raise StaleLedgerError(
                f"ledger is on cycle {self.cycle_number}, "
                f"delta was planned for cycle {delta.expected_cycle_number}"
            )
        base_a = (
            delta.set_agent_a_balance
            if delta.set_agent_a_balance is not None
            else self.agent_a_balance
        )
        return LedgerState(
            agent_a_balance=base_a + delta.agent_a_balance_change,
            agent_b_balance=self.agent_b_balance + delta.agent_b_balance_change,
            cycle_number=self.cycle_number + delta.cycle_number_increment,
            cycle_target=self.cycle_target + delta.cycle_target_increment,
            agent_b_enabled=self.agent_b_enabled or delta.enable_agent_b,
            last_reset=(now or utcnow()) if delta.touch_reset else self.last_reset,
        )


def plan_cycle_completion(state: LedgerState) -> LedgerDelta:
    """Build the guarded delta that closes agent A's current cycle."""
    return LedgerDelta(
        set_agent_a_balance=CYCLE_SEED,
        cycle_number_increment=1,
        cycle_target_increment=CYCLE_SEED,
        agent_b_balance_change=CYCLE_TRANSFER,
        enable_agent_b=True,
        touch_reset=True,
        expected_cycle_number=state.cycle_number,
    )


# ---------------------------------------------------------------------------
# Append-only records
# ---------------------------------------------------------------------------


class Trade(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    agent: AgentId
    pair: str
    side: TradeSide
    size: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    exit_price: Optional[float] = None
    pnl: float = 0.0
    usd_amount: Optional[float] = None
    mcs: Optional[float] = None
    execution_mode: ExecutionMode
    order_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SentimentReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    fgi_value: int = Field(ge=0, le=100)
    trend_score: float
    mcs: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)


class MonthlyReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    month_key: str
    start_balance: float
    end_balance: float
    donation_amount: float = Field(ge=0)
    total_trades: int = 0
    total_pnl: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("month_key")
    @classmethod
    def _check_month_key(cls, value: str) -> str:
        try:
            datetime.strptime(value, "%Y-%m")
        except ValueError as exc:
            raise ValueError(f"month_key must be YYYY-MM, got {value!r}") from exc
        return value


class BalanceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SnapshotKind
    period_key: str
    exchange_usd: Optional[float] = None
    agent_a_balance: float
    agent_b_balance: float
    captured_at: datetime = Field(default_factory=utcnow)


@dataclass(slots=True)
class TradeStatistics:
    agent: AgentId
    total_trades: int
    winning_trades: int
    win_rate: float
    total_pnl: float
    average_trade_size: float
    max_drawdown: float

    @classmethod
    def from_trades(cls, agent: AgentId, trades: Iterable[Trade]) -> "TradeStatistics":
        rows = sorted(trades, key=lambda t: t.timestamp)
        pnls = [t.pnl for t in rows]
        return cls(
            agent=agent,
            total_trades=len(rows),
            winning_trades=sum(1 for p in pnls if p > 0),
            win_rate=round_to(win_rate(pnls), 2),
            total_pnl=round_to(sum(pnls), 2),
            average_trade_size=round_to(mean(t.usd_amount or 0.0 for t in rows), 2),
            max_drawdown=round_to(max_drawdown(pnls), 2),
        )
