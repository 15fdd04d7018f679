"""Periodic ticker refresh for the traded pairs."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Sequence

from adapters.base_adapter import ExchangeClient
from core.errors import ExchangeError
from core.numeric import is_positive_finite
from models.ledger import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAIRS = ("BTC/USD", "ETH/USD")


class MarketMonitor:
    def __init__(
        self,
        *,
        exchange: ExchangeClient,
        pairs: Sequence[str] = DEFAULT_PAIRS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.exchange = exchange
        self.pairs = tuple(pairs)
        self._clock = clock
        self.latest_prices: dict[str, float] = {}
        self.updated_at: datetime | None = None

    async def refresh(self) -> dict[str, float]:
        """Fetch prices for all pairs.

        Raises:
            ExchangeError: on a fetch failure, or when a pair is missing or its
                price is not a positive finite number.  The previous prices
                are kept.
        """
        prices = await self.exchange.get_ticker(self.pairs)
        for pair in self.pairs:
            if not is_positive_finite(prices.get(pair)):
                raise ExchangeError(f"invalid price for {pair}: {prices.get(pair)!r}")
        self.latest_prices = dict(prices)
        self.updated_at = self._clock()
        logger.debug(
            "Market refresh: %s",
            ", ".join(f"{pair} {price:.2f}" for pair, price in prices.items()),
        )
        return prices
