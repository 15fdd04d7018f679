"""adapters/fear_greed_adapter.py — alternative.me Crypto Fear & Greed index.

Free, keyless endpoint.  Response shape::

    {"data": [{"value": "47", "value_classification": "Neutral", ...}]}
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from adapters.base_adapter import SentimentSource
from core.errors import SentimentSourceError

logger = logging.getLogger(__name__)

DEFAULT_FGI_URL = "https://api.alternative.me/fng/"


class FearGreedSource(SentimentSource):
    """Fetch the latest Fear & Greed value.

    Args:
        url: Endpoint (``FGI_URL``).
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        url: str = DEFAULT_FGI_URL,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def fetch_raw_index(self) -> int:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.url, params={"limit": 1})
                resp.raise_for_status()
                payload: dict[str, Any] = resp.json()
        except httpx.HTTPError as exc:
            raise SentimentSourceError(f"Fear & Greed request failed: {exc}") from exc
        except ValueError as exc:
            raise SentimentSourceError(f"Fear & Greed returned invalid JSON: {exc}") from exc

        return self._parse(payload)

    @staticmethod
    def _parse(payload: Any) -> int:
        try:
            raw = payload["data"][0]["value"]
            value = int(float(raw))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise SentimentSourceError(f"Unexpected Fear & Greed payload: {payload!r}") from exc

        if not 0 <= value <= 100:
            raise SentimentSourceError(f"Fear & Greed value out of range: {value}")
        logger.debug("Fear & Greed index: %d", value)
        return value
