from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.errors import StaleLedgerError
from models.ledger import (
    AgentId,
    ExecutionMode,
    LedgerDelta,
    LedgerState,
    MonthlyReport,
    Trade,
    TradeSide,
    TradeStatistics,
    plan_cycle_completion,
)

NOW = datetime(2026, 3, 17, 14, 30, tzinfo=timezone.utc)


def _state(**overrides) -> LedgerState:
    return LedgerState.seed(NOW).model_copy(update=overrides)


class TestCycleCompletion:
    def test_completion_from_205(self) -> None:
        state = _state(agent_a_balance=205.0)
        assert state.cycle_complete

        later = NOW + timedelta(hours=1)
        after = state.apply(plan_cycle_completion(state), now=later)

        assert after.agent_a_balance == 30.0
        assert after.cycle_number == 2
        assert after.cycle_target == 230.0
        assert after.agent_b_balance == 200.0
        assert after.agent_b_enabled is True
        assert after.last_reset == later

    def test_second_apply_of_same_plan_is_stale(self) -> None:
        state = _state(agent_a_balance=205.0)
        delta = plan_cycle_completion(state)
        after = state.apply(delta)
        with pytest.raises(StaleLedgerError):
            after.apply(delta)

    def test_below_target_is_not_complete(self) -> None:
        state = _state(agent_a_balance=199.99)
        assert not state.cycle_complete
        assert state.cycle_progress == pytest.approx(0.99995)


class TestLedgerDelta:
    def test_negative_increments_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            LedgerDelta(cycle_number_increment=-1)
        with pytest.raises(PydanticValidationError):
            LedgerDelta(cycle_target_increment=-5.0)

    def test_pnl_deltas_move_only_one_agent(self) -> None:
        state = _state()
        after_a = state.apply(LedgerDelta.agent_a_pnl(-4.5))
        after_b = state.apply(LedgerDelta.agent_b_pnl(2.0))
        assert (after_a.agent_a_balance, after_a.agent_b_balance) == (225.5, 0.0)
        assert (after_b.agent_a_balance, after_b.agent_b_balance) == (230.0, 2.0)

    def test_enable_flag_is_one_way(self) -> None:
        state = _state(agent_b_enabled=True)
        assert state.apply(LedgerDelta()).agent_b_enabled is True

    def test_is_empty(self) -> None:
        assert LedgerDelta().is_empty
        assert not LedgerDelta.agent_b_pnl(1.0).is_empty


class TestRecords:
    def test_trade_requires_positive_size_and_price(self) -> None:
        with pytest.raises(PydanticValidationError):
            Trade(
                agent=AgentId.A,
                pair="BTC/USD",
                side=TradeSide.BUY,
                size=0.0,
                entry_price=50_000.0,
                execution_mode=ExecutionMode.SIMULATION,
            )

    def test_month_key_format(self) -> None:
        MonthlyReport(month_key="2026-03", start_balance=200, end_balance=210, donation_amount=5)
        with pytest.raises(PydanticValidationError):
            MonthlyReport(month_key="March", start_balance=0, end_balance=0, donation_amount=0)

    def test_donation_cannot_be_negative(self) -> None:
        with pytest.raises(PydanticValidationError):
            MonthlyReport(month_key="2026-03", start_balance=0, end_balance=0, donation_amount=-1)


def test_trade_statistics() -> None:
    def trade(pnl: float, minutes: int) -> Trade:
        return Trade(
            agent=AgentId.B,
            pair="ETH/USD",
            side=TradeSide.BUY,
            size=0.01,
            entry_price=3_000.0,
            pnl=pnl,
            usd_amount=30.0,
            execution_mode=ExecutionMode.SIMULATION,
            timestamp=NOW + timedelta(minutes=minutes),
        )

    stats = TradeStatistics.from_trades(AgentId.B, [trade(-1.0, 2), trade(2.0, 1), trade(0.5, 3)])
    assert stats.total_trades == 3
    assert stats.winning_trades == 2
    assert stats.win_rate == pytest.approx(66.67)
    assert stats.total_pnl == pytest.approx(1.5)
    assert stats.average_trade_size == pytest.approx(30.0)
    assert stats.max_drawdown == pytest.approx(1.0)


def test_empty_statistics() -> None:
    stats = TradeStatistics.from_trades(AgentId.A, [])
    assert stats.total_trades == 0
    assert stats.win_rate == 0.0
