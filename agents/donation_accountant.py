"""
agents/donation_accountant.py — monthly donation report for agent B.

Invoked by the scheduler on the last day of each month (and on demand from
the CLI).  The report for a month is written once: if it exists the run is a
no-op, and the insert itself is insert-if-absent so concurrent runs cannot
produce two reports.

    profit   = end_balance - start_balance
    donation = 0.5 × profit  if profit > 0  else 0

``start_balance`` is agent B's balance in the month's ``monthly`` snapshot.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from database.base_store import StateStore
from models.ledger import AgentId, MonthlyReport, SnapshotKind, month_key_for, utcnow

logger = logging.getLogger(__name__)

DONATION_SHARE = 0.5


def compute_donation(start_balance: float, end_balance: float) -> float:
    profit = end_balance - start_balance
    if profit <= 0:
        return 0.0
    return profit * DONATION_SHARE


class MonthlyDonationAccountant:
    def __init__(self, *, store: StateStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    async def run(self, now: datetime | None = None) -> MonthlyReport | None:
        """Create this month's report; return it, or ``None`` if it already existed."""
        now = now or self._clock()
        month_key = month_key_for(now)

        if await self.store.read_monthly_report(month_key) is not None:
            logger.info("Monthly report %s already exists, nothing to do", month_key)
            return None

        state = await self.store.read_latest_ledger_state()
        end_balance = state.agent_b_balance

        snapshot = await self.store.read_balance_snapshot(SnapshotKind.MONTHLY, month_key)
        if snapshot is None:
            logger.warning(
                "No month-start snapshot for %s; using current agent B balance as start",
                month_key,
            )
            start_balance = end_balance
        else:
            start_balance = snapshot.agent_b_balance

        month_start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
        trades = await self.store.list_trades(AgentId.B, month_start)

        report = MonthlyReport(
            month_key=month_key,
            start_balance=start_balance,
            end_balance=end_balance,
            donation_amount=compute_donation(start_balance, end_balance),
            total_trades=len(trades),
            total_pnl=sum(t.pnl for t in trades),
            created_at=now,
        )
        stored, created = await self.store.read_or_create_monthly_report(report)
        if not created:
            logger.info("Monthly report %s was created concurrently, keeping it", month_key)
            return None

        logger.info(
            "Monthly report %s: start $%.2f, end $%.2f, donation $%.2f (%d trades)",
            month_key,
            stored.start_balance,
            stored.end_balance,
            stored.donation_amount,
            stored.total_trades,
        )
        return stored
