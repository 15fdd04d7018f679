"""Start, daily, weekly and monthly balance snapshots.

One row per (kind, period); re-running within a period changes nothing.
The monthly row doubles as agent B's month-start balance for donations.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from core.balance_cache import BalanceCache
from core.errors import ExternalServiceError
from database.base_store import StateStore
from models.ledger import BalanceSnapshot, SnapshotKind, month_key_for, utcnow

logger = logging.getLogger(__name__)


def period_key(kind: SnapshotKind, moment: datetime) -> str:
    if kind is SnapshotKind.START:
        return "initial"
    if kind is SnapshotKind.DAILY:
        return moment.strftime("%Y-%m-%d")
    if kind is SnapshotKind.WEEKLY:
        return moment.strftime("%G-W%V")
    return month_key_for(moment)


class BalanceSnapshotter:
    def __init__(
        self,
        *,
        store: StateStore,
        balance_cache: BalanceCache,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.balance_cache = balance_cache
        self._clock = clock

    async def take(self, kind: SnapshotKind) -> BalanceSnapshot | None:
        """Record a snapshot for the current period; ``None`` if one exists."""
        now = self._clock()
        key = period_key(kind, now)

        try:
            exchange_usd: float | None = await self.balance_cache.get_cached_balance()
        except ExternalServiceError as exc:
            logger.warning("Exchange balance unavailable for %s snapshot: %s", kind.value, exc)
            exchange_usd = None

        state = await self.store.read_latest_ledger_state()
        snapshot = BalanceSnapshot(
            kind=kind,
            period_key=key,
            exchange_usd=exchange_usd,
            agent_a_balance=state.agent_a_balance,
            agent_b_balance=state.agent_b_balance,
            captured_at=now,
        )
        if not await self.store.save_balance_snapshot(snapshot):
            logger.debug("%s snapshot %s already recorded", kind.value, key)
            return None

        logger.info(
            "%s snapshot %s: exchange %s, A $%.2f, B $%.2f",
            kind.value,
            key,
            f"${exchange_usd:.2f}" if exchange_usd is not None else "n/a",
            snapshot.agent_a_balance,
            snapshot.agent_b_balance,
        )
        return snapshot

    async def ensure_startup_snapshots(self) -> None:
        await self.take(SnapshotKind.START)
        await self.take(SnapshotKind.MONTHLY)
