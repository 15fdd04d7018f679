from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from models.ledger import TradeSide


@dataclass(frozen=True, slots=True)
class OrderResult:
    order_id: str
    price: float
    meta: Dict[str, Any] = field(default_factory=dict)


class ExchangeClient(ABC):
    """Abstract contract for exchange price lookup and order placement.

    Implementations raise :class:`core.errors.ExchangeError` on any failure;
    they never return a default price.
    """

    name: str = "exchange"

    @abstractmethod
    async def get_ticker(self, pairs: Sequence[str]) -> Dict[str, float]:
        """Return the last traded price for every requested pair."""

        raise NotImplementedError

    @abstractmethod
    async def place_order(
        self,
        pair: str,
        side: TradeSide,
        order_type: str,
        size: float,
        meta: Dict[str, Any] | None = None,
    ) -> OrderResult:
        """Submit an order of *size* base units and return its id and price."""

        raise NotImplementedError

    @abstractmethod
    async def get_total_usd_value(self) -> float:
        """Return the account's total value in USD."""

        raise NotImplementedError

    @abstractmethod
    async def get_hourly_closes(self, pair: str, limit: int = 250) -> List[float]:
        """Return up to *limit* hourly close prices, oldest first."""

        raise NotImplementedError

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""


class SentimentSource(ABC):
    """Abstract contract for the raw Fear & Greed style index."""

    @abstractmethod
    async def fetch_raw_index(self) -> int:
        """Return the latest index value in ``[0, 100]``."""

        raise NotImplementedError

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""
