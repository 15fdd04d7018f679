"""Per-day loss and open-position counters for agent A."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Iterable

from models.ledger import Trade

logger = logging.getLogger(__name__)


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)


def daily_loss_from_trades(trades: Iterable[Trade]) -> float:
    """Sum of realised losses, as a positive number."""
    return sum(-trade.pnl for trade in trades if trade.pnl < 0)


@dataclass(slots=True)
class DailyRiskLimits:
    """Counters that reset when the UTC calendar day rolls over.

    On a new day the counters are reloaded from that day's trade log through
    :meth:`seed`, so a restart keeps the limits already used up.  Open
    positions are counted per day: reconciling fills into closed positions
    happens outside this process.
    """

    max_daily_loss: float
    max_open_positions: int
    daily_loss: float = 0.0
    open_positions: int = 0
    day: date | None = field(default=None)

    def roll_over(self, now: datetime) -> bool:
        """Reset counters if *now* falls on a new day. Returns True on reset."""
        today = now.astimezone(timezone.utc).date()
        if self.day == today:
            return False
        if self.day is not None:
            logger.info(
                "Daily risk counters reset (loss=%.2f open=%d) for %s",
                self.daily_loss,
                self.open_positions,
                today.isoformat(),
            )
        self.day = today
        self.daily_loss = 0.0
        self.open_positions = 0
        return True

    def seed(self, trades: list[Trade]) -> None:
        """Load today's counters from the trade log."""
        self.daily_loss = daily_loss_from_trades(trades)
        self.open_positions = sum(1 for trade in trades if trade.order_id is not None)
        if trades:
            logger.info(
                "Daily risk counters restored from %d trades (loss=%.2f open=%d)",
                len(trades),
                self.daily_loss,
                self.open_positions,
            )

    def blocked_reason(self) -> str | None:
        if self.daily_loss >= self.max_daily_loss:
            return f"daily loss {self.daily_loss:.2f} >= limit {self.max_daily_loss:.2f}"
        if self.open_positions >= self.max_open_positions:
            return f"open positions {self.open_positions} >= limit {self.max_open_positions}"
        return None

    def record_pnl(self, pnl: float) -> None:
        if pnl < 0:
            self.daily_loss += -pnl

    def record_open_position(self) -> None:
        self.open_positions += 1
