"""Small numeric helpers used by sentiment, risk and stats."""
from __future__ import annotations

import math
from typing import Iterable, Sequence


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp *value* into ``[lower, upper]``."""
    return max(lower, min(upper, value))


def round_to(value: float, decimals: int = 2) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def is_positive_finite(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def ema(values: Sequence[float], period: int) -> list[float]:
    """Exponential moving average seeded with the SMA of the first *period* values.

    Returns one value per input from index ``period - 1`` onward, or an empty
    list when there is not enough data.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    if len(values) < period:
        return []

    multiplier = 2.0 / (period + 1)
    current = sum(values[:period]) / period
    result = [current]
    for price in values[period:]:
        current = (price - current) * multiplier + current
        result.append(current)
    return result


def percentage_change(old: float, new: float) -> float:
    """Change from *old* to *new* in percent; 0 when *old* is zero."""
    if old == 0:
        return 0.0
    return (new - old) / old * 100.0


def stop_loss_price(entry_price: float, stop_loss_pct: float, side: str) -> float:
    if side == "buy":
        return entry_price * (1 - stop_loss_pct)
    return entry_price * (1 + stop_loss_pct)


def take_profit_price(entry_price: float, take_profit_pct: float, side: str) -> float:
    if side == "buy":
        return entry_price * (1 + take_profit_pct)
    return entry_price * (1 - take_profit_pct)


def risk_reward_ratio(entry: float, stop: float, target: float) -> float:
    risk = abs(entry - stop)
    if risk == 0:
        return 0.0
    return abs(target - entry) / risk


def mean(values: Iterable[float]) -> float:
    items = list(values)
    return sum(items) / len(items) if items else 0.0


def win_rate(pnls: Iterable[float]) -> float:
    """Percentage of strictly profitable entries."""
    items = list(pnls)
    if not items:
        return 0.0
    wins = sum(1 for pnl in items if pnl > 0)
    return wins / len(items) * 100.0


def max_drawdown(pnls: Iterable[float]) -> float:
    """Largest peak-to-trough fall of the cumulative pnl curve (USD, >= 0)."""
    peak = 0.0
    cumulative = 0.0
    worst = 0.0
    for pnl in pnls:
        cumulative += pnl
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst
