"""core/balance_cache.py — single-flight TTL cache over the exchange USD total.

Every timer (bot ticks, snapshots, status) reads the real account value
through one shared :class:`BalanceCache`.  Within the TTL the cached value is
returned without I/O.  Once stale, the first caller starts exactly one fetch
and every caller that arrives before it finishes awaits that same fetch.

A failed fetch is never cached: all waiters receive the error and the next
call tries again.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional

from core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0


class BalanceCache:
    """Cache the result of *fetch* for *ttl_seconds*.

    Args:
        fetch: Coroutine function returning the total USD value.
        ttl_seconds: Freshness window (default 30s).
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[float]],
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: Optional[float] = None
        self._fetched_at: Optional[float] = None
        self._inflight: Optional[asyncio.Task[float]] = None
        self._generation = 0
        self.fetch_count = 0

    @property
    def value(self) -> Optional[float]:
        return self._value

    def is_fresh(self) -> bool:
        return (
            self._value is not None
            and self._fetched_at is not None
            and self._clock() - self._fetched_at < self._ttl
        )

    async def get_cached_balance(self) -> float:
        if self.is_fresh():
            return self._value  # type: ignore[return-value]

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._refresh(self._generation))
        # shield: one waiter being cancelled must not cancel the shared fetch
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        """Force the next read to refetch (e.g. after a live order).

        A fetch already in flight still answers its existing waiters, but its
        value is not marked fresh and later callers start a new fetch.
        """
        self._fetched_at = None
        self._generation += 1
        self._inflight = None

    async def _refresh(self, generation: int) -> float:
        try:
            self.fetch_count += 1
            try:
                value = float(await self._fetch())
            except (TypeError, ValueError) as exc:
                raise ExternalServiceError(f"balance fetch returned non-numeric value: {exc}") from exc

            if not math.isfinite(value) or value < 0:
                raise ExternalServiceError(f"balance fetch returned invalid value {value!r}")

            if generation == self._generation:
                self._value = value
                self._fetched_at = self._clock()
                logger.debug("Balance cache refreshed: $%.2f", value)
            else:
                logger.debug("Balance $%.2f fetched before invalidation, not cached as fresh", value)
            return value
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None
