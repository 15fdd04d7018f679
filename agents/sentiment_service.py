"""
agents/sentiment_service.py — Market Confidence Score (MCS) producer.

MCS combines the Fear & Greed index (FGI, 0–100) with a ±0.2 trend bonus
from the primary pair's position relative to its 200-hour EMA:

    FGI  0–20 → 0.1   21–40 → 0.3   41–60 → 0.6   61–80 → 0.8   81–100 → 1.0
    mcs = clamp(base + trend_score, 0, 1)

``refresh()`` runs hourly from the scheduler and appends a SentimentReading.
Engines only call ``get_latest_mcs()``, which reads the newest stored reading
and never raises: with nothing stored it returns the neutral 0.5.

Environment variables:
  FGI_URL : Fear & Greed endpoint (default alternative.me)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from adapters.base_adapter import ExchangeClient, SentimentSource
from core.errors import ExternalServiceError, PersistenceError
from core.numeric import clamp, ema, mean, percentage_change, round_to
from database.base_store import StateStore
from models.ledger import SentimentReading, TrendSignal, utcnow

logger = logging.getLogger(__name__)

# ── tunables ───────────────────────────────────────────────────────────────
NEUTRAL_MCS = 0.5
NEUTRAL_FGI = 50
EMA_PERIOD = 200
TREND_THRESHOLD_PCT = 2.0
TREND_SCORE = 0.2
FGI_MIN_FETCH_INTERVAL = timedelta(minutes=15)
READINGS_TO_KEEP = 1000

_FGI_BUCKETS = ((20, 0.1), (40, 0.3), (60, 0.6), (80, 0.8))


def fgi_base_score(fgi: int) -> float:
    for upper, score in _FGI_BUCKETS:
        if fgi <= upper:
            return score
    return 1.0


def compute_mcs(fgi: int, trend_score: float) -> float:
    """Deterministic MCS in [0, 1] from an FGI value and a trend score."""
    return round_to(clamp(fgi_base_score(fgi) + trend_score, 0.0, 1.0), 4)


@dataclass(frozen=True, slots=True)
class TrendAnalysis:
    pair: str
    signal: TrendSignal
    trend_score: float
    price: float | None = None
    ema: float | None = None
    deviation_pct: float = 0.0

    @classmethod
    def neutral(cls, pair: str) -> "TrendAnalysis":
        return cls(pair=pair, signal=TrendSignal.NEUTRAL, trend_score=0.0)


class SentimentService:
    """Compute, store and serve the Market Confidence Score.

    Args:
        source: Raw FGI provider.
        exchange: Used for hourly close prices (trend component).
        store: Durable sentiment log.
        primary_pair: Pair whose trend feeds MCS.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        *,
        source: SentimentSource,
        exchange: ExchangeClient,
        store: StateStore,
        primary_pair: str = "BTC/USD",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.exchange = exchange
        self.store = store
        self.primary_pair = primary_pair
        self._clock = clock
        self._last_fgi: int | None = None
        self._last_fgi_at: datetime | None = None
        self._last_reading: SentimentReading | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_latest_mcs(self) -> float:
        try:
            reading = await self.store.read_latest_sentiment_reading()
        except PersistenceError as exc:
            logger.warning("Sentiment store unavailable, using last known MCS: %s", exc)
            reading = self._last_reading
        if reading is None:
            return NEUTRAL_MCS
        return reading.mcs

    async def get_trend_analysis(self, pair: str) -> TrendAnalysis:
        """Trend of *pair* against its 200-hour EMA.

        Neutral with fewer than 200 closes.  Raises ExternalServiceError when
        the exchange cannot provide prices.
        """
        closes = await self.exchange.get_hourly_closes(pair, limit=EMA_PERIOD + 50)
        averages = ema(closes, EMA_PERIOD)
        if not averages:
            logger.debug("Only %d closes for %s, trend neutral", len(closes), pair)
            return TrendAnalysis.neutral(pair)

        price, average = closes[-1], averages[-1]
        deviation = percentage_change(average, price)
        if deviation > TREND_THRESHOLD_PCT:
            signal, score = TrendSignal.BULLISH, TREND_SCORE
        elif deviation < -TREND_THRESHOLD_PCT:
            signal, score = TrendSignal.BEARISH, -TREND_SCORE
        else:
            signal, score = TrendSignal.NEUTRAL, 0.0
        return TrendAnalysis(
            pair=pair,
            signal=signal,
            trend_score=score,
            price=price,
            ema=average,
            deviation_pct=round_to(deviation, 3),
        )

    async def refresh(self) -> SentimentReading:
        """Fetch inputs, compute MCS and append a reading.

        Source failures degrade to fallbacks; a store failure propagates.
        """
        fgi = await self._current_fgi()
        try:
            trend_score = (await self.get_trend_analysis(self.primary_pair)).trend_score
        except ExternalServiceError as exc:
            logger.warning("Trend unavailable for %s, using 0: %s", self.primary_pair, exc)
            trend_score = 0.0

        reading = SentimentReading(
            fgi_value=fgi,
            trend_score=trend_score,
            mcs=compute_mcs(fgi, trend_score),
            timestamp=self._clock(),
        )
        await self.store.append_sentiment_reading(reading)
        self._last_reading = reading
        logger.info(
            "MCS %.3f (FGI %d, trend %+.1f)", reading.mcs, reading.fgi_value, reading.trend_score
        )
        return reading

    async def prune_readings(self, keep: int = READINGS_TO_KEEP) -> int:
        removed = await self.store.prune_sentiment_readings(keep)
        if removed:
            logger.info("Pruned %d old sentiment readings", removed)
        return removed

    async def get_statistics(self, days: int = 7) -> dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        readings = await self.store.list_sentiment_readings(since)
        values = [r.mcs for r in readings]
        return {
            "days": days,
            "readings": len(values),
            "average_mcs": round_to(mean(values), 4) if values else None,
            "min_mcs": min(values) if values else None,
            "max_mcs": max(values) if values else None,
            "latest_mcs": values[-1] if values else None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _current_fgi(self) -> int:
        now = self._clock()
        if (
            self._last_fgi is not None
            and self._last_fgi_at is not None
            and now - self._last_fgi_at < FGI_MIN_FETCH_INTERVAL
        ):
            return self._last_fgi

        try:
            fgi = await self.source.fetch_raw_index()
        except ExternalServiceError as exc:
            fallback = await self._fallback_fgi()
            logger.warning("Fear & Greed unavailable, using %d: %s", fallback, exc)
            return fallback

        self._last_fgi = fgi
        self._last_fgi_at = now
        return fgi

    async def _fallback_fgi(self) -> int:
        if self._last_fgi is not None:
            return self._last_fgi
        try:
            stored = await self.store.read_latest_sentiment_reading()
        except PersistenceError:
            stored = None
        return stored.fgi_value if stored else NEUTRAL_FGI
