from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from core.errors import ValidationError
from models.ledger import AgentId, ExecutionMode, Trade, TradeSide
from risk_engine.risk_profiles import TradeRisk, trade_risk
from risk_engine.trade_guard import LiveTradeGuard, TradeGuardSettings


def _risk(ratio: float = 2.0, max_loss: float = 0.75) -> TradeRisk:
    return TradeRisk(
        stop_loss_price=49_000.0,
        take_profit_price=52_000.0,
        risk_reward_ratio=ratio,
        max_loss_usd=max_loss,
    )


def _trade(agent: AgentId, pnl: float, at: datetime) -> Trade:
    return Trade(
        agent=agent,
        pair="BTC/USD",
        side=TradeSide.BUY,
        size=0.0005,
        entry_price=50_000.0,
        pnl=pnl,
        usd_amount=25.0,
        mcs=0.6,
        execution_mode=ExecutionMode.SIMULATION,
        timestamp=at,
    )


@pytest.fixture
def guard(store, clock) -> LiveTradeGuard:
    return LiveTradeGuard(store=store, clock=clock)


@pytest.mark.asyncio
async def test_ordinary_order_passes(guard: LiveTradeGuard) -> None:
    assert await guard.rejection_reason(AgentId.A, "BTC/USD", 25.0, _risk()) is None
    await guard.validate(AgentId.B, "ETH/USD", 30.0, _risk(ratio=1.5))


@pytest.mark.asyncio
async def test_emergency_stop_blocks_everything(store, clock) -> None:
    guard = LiveTradeGuard(store=store, settings=TradeGuardSettings(emergency_stop=True), clock=clock)
    with pytest.raises(ValidationError, match="EMERGENCY_STOP"):
        await guard.validate(AgentId.A, "BTC/USD", 10.0, _risk())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "pair, amount, ratio, expected",
    [
        ("DOGE/USD", 25.0, 2.0, "not traded"),
        ("BTC/USD", 60.01, 2.0, "exceeds live maximum"),
        ("BTC/USD", 25.0, 1.49, "risk/reward"),
    ],
)
async def test_order_level_rejections(guard: LiveTradeGuard, pair, amount, ratio, expected) -> None:
    reason = await guard.rejection_reason(AgentId.A, pair, amount, _risk(ratio=ratio))
    assert reason is not None and expected in reason


@pytest.mark.asyncio
async def test_exit_levels_from_profiles_pass_the_ratio(guard: LiveTradeGuard, risk_engine) -> None:
    for agent, mcs in ((AgentId.A, 0.3), (AgentId.A, 0.9), (AgentId.B, 0.6)):
        risk = trade_risk(TradeSide.BUY, 3_000.0, 25.0, risk_engine.assess_risk(agent, mcs))
        assert await guard.rejection_reason(agent, "ETH/USD", 25.0, risk) is None


@pytest.mark.asyncio
async def test_potential_loss_counted_against_todays_losses(guard: LiveTradeGuard, store, clock) -> None:
    today = clock()
    await store.append_trade(_trade(AgentId.B, -49.5, today - timedelta(hours=1)))
    await store.append_trade(_trade(AgentId.B, -30.0, today - timedelta(days=1)))
    await store.append_trade(_trade(AgentId.B, 12.0, today - timedelta(minutes=5)))

    assert await guard.rejection_reason(AgentId.B, "BTC/USD", 25.0, _risk(max_loss=0.5)) is None
    with pytest.raises(ValidationError, match="daily loss"):
        await guard.validate(AgentId.B, "BTC/USD", 25.0, _risk(max_loss=0.75))
    assert await guard.rejection_reason(AgentId.A, "BTC/USD", 25.0, _risk(max_loss=0.75)) is None
