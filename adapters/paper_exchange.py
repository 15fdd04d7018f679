"""adapters/paper_exchange.py — offline exchange for development and dry runs.

Prices follow a seeded random walk so runs are reproducible.  Orders are
filled immediately at the current price and only recorded in memory.
Selected explicitly with ``EXCHANGE_BACKEND=paper``.
"""
from __future__ import annotations

import itertools
import logging
import random
from typing import Any, Dict, List, Sequence

from adapters.base_adapter import ExchangeClient, OrderResult
from core.errors import ExchangeError
from core.numeric import is_positive_finite
from models.ledger import TradeSide

logger = logging.getLogger(__name__)

DEFAULT_PRICES = {"BTC/USD": 45_000.25, "ETH/USD": 3_000.12}
DEFAULT_TOTAL_USD = 50_000.0


class PaperExchangeClient(ExchangeClient):
    name = "paper"

    def __init__(
        self,
        prices: Dict[str, float] | None = None,
        *,
        total_usd: float = DEFAULT_TOTAL_USD,
        seed: int = 42,
    ) -> None:
        self._prices = dict(prices or DEFAULT_PRICES)
        self._total_usd = total_usd
        self._seed = seed
        self._order_ids = itertools.count(1)
        self.orders: List[Dict[str, Any]] = []

    def set_price(self, pair: str, price: float) -> None:
        self._prices[pair] = price

    async def get_ticker(self, pairs: Sequence[str]) -> Dict[str, float]:
        missing = [pair for pair in pairs if pair not in self._prices]
        if missing:
            raise ExchangeError(f"Paper exchange has no market for {missing}")
        return {pair: self._prices[pair] for pair in pairs}

    async def get_hourly_closes(self, pair: str, limit: int = 250) -> List[float]:
        if pair not in self._prices:
            raise ExchangeError(f"Paper exchange has no market for {pair}")
        # Walk backwards from the current price so the last close is "now".
        rng = random.Random(f"{self._seed}:{pair}")
        price = self._prices[pair]
        closes = [price]
        for _ in range(limit - 1):
            price = price / (1 + rng.uniform(-0.01, 0.01))
            closes.append(price)
        closes.reverse()
        return closes

    async def get_total_usd_value(self) -> float:
        return self._total_usd

    async def place_order(
        self,
        pair: str,
        side: TradeSide,
        order_type: str,
        size: float,
        meta: Dict[str, Any] | None = None,
    ) -> OrderResult:
        if not is_positive_finite(size):
            raise ExchangeError(f"Refusing to submit order with size {size!r}")
        price = (await self.get_ticker([pair]))[pair]
        order_id = f"paper-{next(self._order_ids)}"
        self.orders.append(
            {"id": order_id, "pair": pair, "side": side.value, "type": order_type, "size": size, "price": price}
        )
        logger.info("Paper order %s: %s %.8f %s @ %.2f", order_id, side.value, size, pair, price)
        return OrderResult(order_id=order_id, price=price, meta=dict(meta or {}))
