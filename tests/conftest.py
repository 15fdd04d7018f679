from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.sentiment_service import TrendAnalysis
from core.execution import ExecutionStrategy, Fill
from database.local_store import LocalStore
from models.ledger import ExecutionMode, LedgerDelta, TrendSignal
from risk_engine.risk_profiles import RiskEngine


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def bullish(pair: str = "BTC/USD") -> TrendAnalysis:
    return TrendAnalysis(pair=pair, signal=TrendSignal.BULLISH, trend_score=0.2, deviation_pct=3.1)


def bearish(pair: str = "BTC/USD") -> TrendAnalysis:
    return TrendAnalysis(pair=pair, signal=TrendSignal.BEARISH, trend_score=-0.2, deviation_pct=-3.4)


def neutral(pair: str = "BTC/USD") -> TrendAnalysis:
    return TrendAnalysis.neutral(pair)


async def set_ledger(
    store: LocalStore,
    *,
    agent_a_balance: float | None = None,
    agent_b_balance: float = 0.0,
    cycle_target_increment: float = 0.0,
    agent_b_enabled: bool = False,
) -> None:
    """Move the seeded ledger row to a known state."""
    await store.read_latest_ledger_state()
    await store.write_ledger_state(
        LedgerDelta(
            set_agent_a_balance=agent_a_balance,
            agent_b_balance_change=agent_b_balance,
            cycle_target_increment=cycle_target_increment,
            enable_agent_b=agent_b_enabled,
        )
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 17, 14, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(str(tmp_path / "charity_bot.db"))


@pytest.fixture
def risk_engine() -> RiskEngine:
    return RiskEngine()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def mock_exchange() -> MagicMock:
    exchange = MagicMock()
    exchange.name = "mock"
    exchange.get_ticker = AsyncMock(
        side_effect=lambda pairs: {
            pair: {"BTC/USD": 50_000.0, "ETH/USD": 3_000.0}[pair] for pair in pairs
        }
    )
    exchange.get_total_usd_value = AsyncMock(return_value=10_000.0)
    exchange.get_hourly_closes = AsyncMock(return_value=[])
    exchange.place_order = AsyncMock()
    exchange.close = AsyncMock()
    return exchange


@pytest.fixture
def mock_sentiment() -> MagicMock:
    sentiment = MagicMock()
    sentiment.get_latest_mcs = AsyncMock(return_value=0.6)
    sentiment.get_trend_analysis = AsyncMock(side_effect=lambda pair: bullish(pair))
    return sentiment


class ScriptedStrategy(ExecutionStrategy):
    """Fills at the market price with pnl values taken from *pnls* in order."""

    def __init__(self, pnls=(), mode: ExecutionMode = ExecutionMode.SIMULATION) -> None:
        self.mode = mode
        self.pnls = list(pnls)
        self.calls: list[tuple] = []

    async def execute(self, signal, usd_amount, market_price, assessment) -> Fill:
        self.calls.append((signal, usd_amount, market_price))
        pnl = self.pnls.pop(0) if self.pnls else 0.0
        order_id = f"live-{len(self.calls)}" if self.mode is ExecutionMode.LIVE else None
        return Fill(
            price=market_price,
            size=usd_amount / market_price,
            usd_amount=usd_amount,
            pnl=pnl,
            order_id=order_id,
        )
