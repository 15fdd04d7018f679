from __future__ import annotations

import logging
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from adapters.base_adapter import OrderResult
from core.errors import ConfigurationError, ValidationError
from core.execution import (
    SIMULATION_PROFILES,
    LiveStrategy,
    SimulationStrategy,
    TradeSignal,
    build_strategy,
)
from models.ledger import AgentId, ExecutionMode, TradeSide
from risk_engine.risk_profiles import RiskEngine


def _signal(agent: AgentId = AgentId.A, confidence: float = 0.7) -> TradeSignal:
    return TradeSignal(agent=agent, pair="BTC/USD", side=TradeSide.BUY, confidence=confidence, reason="test")


class TestSimulationStrategy:
    def test_agent_b_gets_confidence_bonus_capped(self) -> None:
        strategy = SimulationStrategy(SIMULATION_PROFILES[AgentId.B])
        assert strategy.win_probability(0.7) == pytest.approx(0.85)
        assert strategy.win_probability(0.9) == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_pnl_within_profile_bounds(self, risk_engine: RiskEngine) -> None:
        strategy = SimulationStrategy(SIMULATION_PROFILES[AgentId.A], random.Random(7))
        assessment = risk_engine.assess_risk(AgentId.A, 0.6)

        for _ in range(50):
            fill = await strategy.execute(_signal(), 25.0, 50_000.0, assessment)
            assert -1.0 - 0.01 <= fill.pnl <= 2.0 + 0.01
            assert abs(fill.price - 50_000.0) <= 50.0
            assert fill.size == pytest.approx(25.0 / fill.price)
            assert fill.order_id is None
            assert "stop_loss" in fill.meta

    @pytest.mark.asyncio
    async def test_seeded_runs_repeat(self, risk_engine: RiskEngine) -> None:
        assessment = risk_engine.assess_risk(AgentId.B, 0.8)
        first = SimulationStrategy(SIMULATION_PROFILES[AgentId.B], random.Random(3))
        second = SimulationStrategy(SIMULATION_PROFILES[AgentId.B], random.Random(3))
        a = await first.execute(_signal(AgentId.B), 30.0, 3_000.0, assessment)
        b = await second.execute(_signal(AgentId.B), 30.0, 3_000.0, assessment)
        assert a == b


class TestLiveStrategy:
    @pytest.fixture
    def balance_cache(self) -> MagicMock:
        cache = MagicMock()
        cache.get_cached_balance = AsyncMock(return_value=1_000.0)
        return cache

    @pytest.mark.asyncio
    async def test_places_market_order(self, mock_exchange, balance_cache, risk_engine: RiskEngine) -> None:
        mock_exchange.place_order.return_value = OrderResult(order_id="OX-1", price=50_010.0)
        strategy = LiveStrategy(mock_exchange, balance_cache)

        fill = await strategy.execute(_signal(), 25.0, 50_000.0, risk_engine.assess_risk(AgentId.A, 0.6))

        pair, side, order_type, size, meta = mock_exchange.place_order.await_args.args
        assert (pair, side, order_type) == ("BTC/USD", TradeSide.BUY, "market")
        assert size == pytest.approx(0.0005)
        assert meta["agent"] == "A"
        assert fill.pnl == 0.0
        assert fill.order_id == "OX-1"
        assert fill.price == 50_010.0
        balance_cache.invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_insufficient_account_value(self, mock_exchange, balance_cache, risk_engine: RiskEngine) -> None:
        balance_cache.get_cached_balance.return_value = 10.0
        strategy = LiveStrategy(mock_exchange, balance_cache)
        with pytest.raises(ValidationError):
            await strategy.execute(_signal(), 25.0, 50_000.0, risk_engine.assess_risk(AgentId.A, 0.6))
        mock_exchange.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unusable_fill_price_still_records_order(
        self, mock_exchange, balance_cache, risk_engine: RiskEngine, caplog
    ) -> None:
        mock_exchange.place_order.return_value = OrderResult(order_id="OX-2", price=0.0)
        strategy = LiveStrategy(mock_exchange, balance_cache)

        with caplog.at_level(logging.ERROR, logger="core.execution"):
            fill = await strategy.execute(_signal(), 25.0, 50_000.0, risk_engine.assess_risk(AgentId.A, 0.6))

        assert fill.order_id == "OX-2"
        assert fill.price == 50_000.0
        assert fill.meta["fill_price_reported"] == 0.0
        assert "OX-2" in caplog.text
        balance_cache.invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_guard_runs_before_order(self, mock_exchange, balance_cache, risk_engine: RiskEngine) -> None:
        guard = MagicMock()
        guard.validate = AsyncMock(side_effect=ValidationError("EMERGENCY_STOP is enabled"))
        strategy = LiveStrategy(mock_exchange, balance_cache, guard)

        with pytest.raises(ValidationError, match="EMERGENCY_STOP"):
            await strategy.execute(_signal(), 25.0, 50_000.0, risk_engine.assess_risk(AgentId.A, 0.6))

        agent, pair, amount, risk = guard.validate.await_args.args
        assert (agent, pair, amount) == (AgentId.A, "BTC/USD", 25.0)
        assert risk.risk_reward_ratio == pytest.approx(2.0)
        mock_exchange.place_order.assert_not_awaited()
        balance_cache.get_cached_balance.assert_not_awaited()


class TestBuildStrategy:
    def test_modes(self, mock_exchange) -> None:
        cache = MagicMock()
        assert build_strategy(None, AgentId.A, exchange=mock_exchange, balance_cache=cache) is None
        sim = build_strategy("simulation", AgentId.A, exchange=mock_exchange, balance_cache=cache)
        live = build_strategy("live", AgentId.B, exchange=mock_exchange, balance_cache=cache)
        assert sim.mode is ExecutionMode.SIMULATION
        assert live.mode is ExecutionMode.LIVE

    def test_unknown_mode(self, mock_exchange) -> None:
        with pytest.raises(ConfigurationError):
            build_strategy("yolo", AgentId.A, exchange=mock_exchange, balance_cache=MagicMock())
