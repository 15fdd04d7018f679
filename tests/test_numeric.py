from __future__ import annotations

import pytest

from core.numeric import (
    clamp,
    ema,
    max_drawdown,
    percentage_change,
    risk_reward_ratio,
    round_to,
    stop_loss_price,
    take_profit_price,
    win_rate,
)


def test_clamp_bounds() -> None:
    assert clamp(1.4, 0.0, 1.0) == 1.0
    assert clamp(-0.2, 0.0, 1.0) == 0.0
    assert clamp(0.55, 0.0, 1.0) == 0.55


def test_round_to_half_up() -> None:
    assert round_to(12.5, 0) == 13.0
    assert round_to(2.346, 2) == pytest.approx(2.35)
    assert round_to(10.0, 2) == 10.0


class TestEma:
    def test_not_enough_data_returns_empty(self) -> None:
        assert ema([1.0, 2.0], 3) == []

    def test_seeded_with_sma(self) -> None:
        values = ema([1.0, 2.0, 3.0, 4.0], 3)
        # seed = mean(1,2,3) = 2; next = (4 - 2) * 0.5 + 2 = 3
        assert values == pytest.approx([2.0, 3.0])

    def test_constant_series_is_flat(self) -> None:
        assert ema([5.0] * 250, 200)[-1] == pytest.approx(5.0)

    def test_rejects_non_positive_period(self) -> None:
        with pytest.raises(ValueError):
            ema([1.0], 0)


def test_percentage_change() -> None:
    assert percentage_change(100.0, 103.0) == pytest.approx(3.0)
    assert percentage_change(0.0, 5.0) == 0.0


def test_stop_and_target_prices_for_buy() -> None:
    assert stop_loss_price(100.0, 0.02, "buy") == pytest.approx(98.0)
    assert take_profit_price(100.0, 0.04, "buy") == pytest.approx(104.0)
    assert risk_reward_ratio(100.0, 98.0, 104.0) == pytest.approx(2.0)


def test_win_rate_and_drawdown() -> None:
    pnls = [5.0, -2.0, -4.0, 3.0]
    assert win_rate(pnls) == pytest.approx(50.0)
    assert win_rate([]) == 0.0
    # cumulative: 5, 3, -1, 2 → peak 5, trough -1
    assert max_drawdown(pnls) == pytest.approx(6.0)
