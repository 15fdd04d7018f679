"""adapters/kraken_adapter.py — Kraken spot client built on ccxt's async API.

Every ccxt failure is re-raised as :class:`core.errors.ExchangeError`; prices
that come back missing or non-positive are treated as failures too.  There is
no fallback to mock data: choosing the paper exchange is a configuration
decision made once at startup.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

import ccxt.async_support as ccxt

from adapters.base_adapter import ExchangeClient, OrderResult
from core.errors import ConfigurationError, ExchangeError
from core.numeric import is_positive_finite
from models.ledger import TradeSide

logger = logging.getLogger(__name__)

_STABLE_ASSETS = {"USD", "ZUSD", "USDT", "USDC"}
_DUST_THRESHOLD = 1e-8


class KrakenExchangeClient(ExchangeClient):
    """Live Kraken client.

    Args:
        api_key: ``KRAKEN_API_KEY``.
        api_secret: ``KRAKEN_API_SECRET``.
        exchange: Pre-built ccxt exchange (tests inject a mock).
    """

    name = "kraken"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        *,
        exchange: Any | None = None,
    ) -> None:
        if exchange is None:
            if not api_key or not api_secret:
                raise ConfigurationError("KRAKEN_API_KEY and KRAKEN_API_SECRET are required")
            exchange = ccxt.kraken(
                {
                    "apiKey": api_key,
                    "secret": api_secret,
                    "enableRateLimit": True,
                }
            )
        self._exchange = exchange

    async def close(self) -> None:
        try:
            await self._exchange.close()
        except ccxt.BaseError as exc:
            logger.warning("Kraken client close failed: %s", exc)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_ticker(self, pairs: Sequence[str]) -> Dict[str, float]:
        try:
            tickers = await self._exchange.fetch_tickers(list(pairs))
        except ccxt.BaseError as exc:
            raise ExchangeError(f"Kraken ticker request failed for {list(pairs)}: {exc}") from exc

        prices: Dict[str, float] = {}
        for pair in pairs:
            last = (tickers.get(pair) or {}).get("last")
            if not is_positive_finite(last):
                raise ExchangeError(f"Kraken returned no usable price for {pair}: {last!r}")
            prices[pair] = float(last)
        return prices

    async def get_hourly_closes(self, pair: str, limit: int = 250) -> List[float]:
        try:
            candles = await self._exchange.fetch_ohlcv(pair, timeframe="1h", limit=limit)
        except ccxt.BaseError as exc:
            raise ExchangeError(f"Kraken OHLC request failed for {pair}: {exc}") from exc
        # [timestamp, open, high, low, close, volume]
        return [float(candle[4]) for candle in candles if candle and candle[4] is not None]

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_total_usd_value(self) -> float:
        try:
            balance = await self._exchange.fetch_balance()
        except ccxt.BaseError as exc:
            raise ExchangeError(f"Kraken balance request failed: {exc}") from exc

        totals: Dict[str, float] = {
            asset: float(amount)
            for asset, amount in (balance.get("total") or {}).items()
            if amount and float(amount) > _DUST_THRESHOLD
        }
        usd = sum(amount for asset, amount in totals.items() if asset in _STABLE_ASSETS)
        others = [asset for asset in totals if asset not in _STABLE_ASSETS]
        if others:
            prices = await self.get_ticker([f"{asset}/USD" for asset in others])
            usd += sum(totals[asset] * prices[f"{asset}/USD"] for asset in others)
        return usd

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
        try:
            order = await self._exchange.create_order(pair, order_type, side.value, size)
        except ccxt.BaseError as exc:
            raise ExchangeError(f"Kraken rejected {side.value} {size} {pair}: {exc}") from exc

        price = order.get("average") or order.get("price")
        if not is_positive_finite(price):
            # market orders often return before the fill price is known
            price = (await self.get_ticker([pair]))[pair]

        order_id = str(order.get("id") or "")
        if not order_id:
            raise ExchangeError(f"Kraken returned an order without id for {pair}")
        logger.info("Kraken order %s: %s %.8f %s @ %.2f", order_id, side.value, size, pair, price)
        return OrderResult(order_id=order_id, price=float(price), meta=dict(meta or {}))
