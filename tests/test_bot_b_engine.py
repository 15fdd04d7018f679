from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from agents.bot_b_engine import BotBEngine, BotBSettings
from agents.engine_base import TickOutcome
from database.local_store import LocalStore
from models.ledger import AgentId
from risk_engine.daily_limits import start_of_day
from risk_engine.risk_profiles import RiskEngine
from conftest import FixedClock, ScriptedStrategy, bearish, bullish, neutral, set_ledger


def _rng(draw: float) -> MagicMock:
    rng = MagicMock()
    rng.random.return_value = draw
    return rng


@pytest.fixture
def strategy() -> ScriptedStrategy:
    return ScriptedStrategy(pnls=[0.9, -0.3, 0.5, 0.4])


def _engine(store, exchange, sentiment, risk_engine, strategy, clock, *, draw=0.1, **settings) -> BotBEngine:
    return BotBEngine(
        store=store,
        exchange=exchange,
        sentiment=sentiment,
        risk_engine=risk_engine,
        strategy=strategy,
        settings=BotBSettings(**settings),
        rng=_rng(draw),
        clock=clock,
    )


@pytest.fixture
def engine(store, mock_exchange, mock_sentiment, risk_engine, strategy, clock) -> BotBEngine:
    return _engine(store, mock_exchange, mock_sentiment, risk_engine, strategy, clock)


def test_start_of_day_is_utc_midnight() -> None:
    moment = datetime(2026, 3, 17, 23, 59, tzinfo=timezone(timedelta(hours=-5)))
    assert start_of_day(moment) == datetime(2026, 3, 18, tzinfo=timezone.utc)


class TestSignals:
    def test_only_bullish_trend_produces_signals(self, engine: BotBEngine) -> None:
        assert engine.generate_signals(0.9, bearish()) == []
        assert engine.generate_signals(0.9, neutral()) == []

    def test_primary_confidence(self, engine: BotBEngine) -> None:
        [signal] = engine.generate_signals(0.6, bullish())
        assert signal.pair == "BTC/USD"
        assert signal.confidence == pytest.approx(0.84)

    def test_secondary_signal_needs_high_mcs_and_winning_draw(
        self, store, mock_exchange, mock_sentiment, risk_engine, strategy, clock
    ) -> None:
        lucky = _engine(store, mock_exchange, mock_sentiment, risk_engine, strategy, clock, draw=0.9)
        unlucky = _engine(store, mock_exchange, mock_sentiment, risk_engine, strategy, clock, draw=0.2)

        assert [s.pair for s in lucky.generate_signals(0.85, bullish())] == ["BTC/USD", "ETH/USD"]
        assert lucky.generate_signals(0.85, bullish())[1].confidence == 0.75
        assert [s.pair for s in unlucky.generate_signals(0.85, bullish())] == ["BTC/USD"]
        assert [s.pair for s in lucky.generate_signals(0.79, bullish())] == ["BTC/USD"]

    def test_position_size(self, engine: BotBEngine, risk_engine: RiskEngine) -> None:
        assessment = risk_engine.assess_risk(AgentId.B, 0.6)
        assert engine.position_size(6_000.0, assessment) == 30.0
        assert engine.position_size(200.0, assessment) == 1.0
        # 0.5% of 20k is 100, but the MCS 0.6 risk size caps at $30
        assert engine.position_size(20_000.0, assessment) == 30.0


class TestTick:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mcs, trend", [(0.9, bullish), (0.6, bullish), (0.3, bearish), (0.6, neutral)]
    )
    async def test_idle_until_enabled(
        self, engine, store: LocalStore, mock_sentiment, strategy, mcs, trend
    ) -> None:
        await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=False)
        mock_sentiment.get_latest_mcs.return_value = mcs
        mock_sentiment.get_trend_analysis.side_effect = lambda pair: trend(pair)

        result = await engine.tick()
        assert result.outcome is TickOutcome.DISABLED
        assert strategy.calls == []
        mock_sentiment.get_latest_mcs.assert_not_awaited()
        state = await store.read_latest_ledger_state()
        assert (state.agent_b_enabled, state.agent_b_balance) == (False, 6_000.0)

    @pytest.mark.asyncio
    async def test_mcs_gate(self, engine, store, mock_sentiment, strategy) -> None:
        await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=True)
        mock_sentiment.get_latest_mcs.return_value = 0.45
        assert (await engine.tick()).outcome is TickOutcome.MCS_BLOCKED
        assert strategy.calls == []

    @pytest.mark.asyncio
    async def test_requires_bullish_trend(self, engine, store, mock_sentiment, strategy) -> None:
        await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=True)
        mock_sentiment.get_trend_analysis.side_effect = lambda pair: neutral(pair)
        assert (await engine.tick()).outcome is TickOutcome.NO_SIGNAL
        assert strategy.calls == []

    @pytest.mark.asyncio
    async def test_small_balance_drops_signal(self, engine, store, strategy) -> None:
        await set_ledger(store, agent_b_balance=200.0, agent_b_enabled=True)
        result = await engine.tick()
        assert result.outcome is TickOutcome.SIGNAL_DROPPED
        assert strategy.calls == []
        assert await store.count_trades_since(AgentId.B, start_of_day(datetime(2026, 3, 17, tzinfo=timezone.utc))) == 0

    @pytest.mark.asyncio
    async def test_trade_credits_agent_b(self, engine, store, strategy) -> None:
        await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=True)

        result = await engine.tick()

        assert result.outcome is TickOutcome.TRADE_EXECUTED
        [(signal, size, price)] = strategy.calls
        assert (signal.pair, size, price) == ("BTC/USD", 30.0, 50_000.0)
        state = await store.read_latest_ledger_state()
        assert state.agent_b_balance == pytest.approx(6_000.9)
        assert state.agent_a_balance == 230.0

    @pytest.mark.asyncio
    async def test_daily_limit_applies_across_ticks(self, engine, store, clock: FixedClock, strategy) -> None:
        await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=True)

        assert (await engine.tick()).outcome is TickOutcome.TRADE_EXECUTED
        assert (await engine.tick()).outcome is TickOutcome.TRADE_EXECUTED
        limited = await engine.tick()
        assert limited.outcome is TickOutcome.LIMIT_REACHED
        assert len(strategy.calls) == 2

        clock.advance(days=1)
        assert (await engine.tick()).outcome is TickOutcome.TRADE_EXECUTED

    @pytest.mark.asyncio
    async def test_secondary_signal_truncated_to_remaining_quota(
        self, store, mock_exchange, mock_sentiment, risk_engine, strategy, clock
    ) -> None:
        await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=True)
        mock_sentiment.get_latest_mcs.return_value = 0.9
        engine = _engine(
            store, mock_exchange, mock_sentiment, risk_engine, strategy, clock, draw=0.9, max_daily_trades=3
        )

        first = await engine.tick()
        assert [t.pair for t in first.trades] == ["BTC/USD", "ETH/USD"]
        second = await engine.tick()
        assert [t.pair for t in second.trades] == ["BTC/USD"]
        assert await store.count_trades_since(AgentId.B, start_of_day(clock())) == 3

    @pytest.mark.asyncio
    async def test_disabled_without_strategy(self, store, mock_exchange, mock_sentiment, risk_engine, clock) -> None:
        engine = _engine(store, mock_exchange, mock_sentiment, risk_engine, None, clock)
        assert (await engine.tick()).outcome is TickOutcome.DISABLED


@pytest.mark.asyncio
async def test_status(engine, store) -> None:
    await set_ledger(store, agent_b_balance=6_000.0, agent_b_enabled=True)
    await engine.tick()
    status = await engine.get_status()
    assert status["agent_b_enabled"] is True
    assert status["trades_today"] == 1
    assert status["balance"] == pytest.approx(6_000.9)
    assert (await engine.get_statistics(days=1)).winning_trades == 1
