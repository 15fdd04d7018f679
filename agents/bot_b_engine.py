"""
agents/bot_b_engine.py — Agent B: conservative, donation-funding trading.

Agent B stays idle until agent A's first cycle completion flips
``agent_b_enabled``; it never changes that flag itself.  It only trades on a
bullish primary-pair trend with MCS >= MIN_MCS_B, at most MAX_DAILY_TRADES_B
times per UTC day, sizing each trade at ``min(0.5% of balance, risk size)``
with a $25 floor.  Realised pnl is credited to ``agent_b_balance`` in the
same transaction that records the trade.

When MCS >= 0.8 a secondary ETH/USD signal is added with probability 0.5.
That draw is intentionally non-deterministic; tests inject a seeded RNG.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from adapters.base_adapter import ExchangeClient
from agent_config import TradingEnvironmentConfig
from agents.engine_base import GuardedEngine, TickOutcome, TickResult
from agents.sentiment_service import SentimentService, TrendAnalysis
from core.errors import ValidationError
from core.execution import ExecutionStrategy, TradeSignal
from core.numeric import is_positive_finite, round_to
from database.base_store import StateStore
from models.ledger import (
    AgentId,
    LedgerDelta,
    Trade,
    TradeSide,
    TradeStatistics,
    TrendSignal,
    utcnow,
)
from risk_engine.daily_limits import start_of_day
from risk_engine.risk_profiles import RiskAssessment, RiskEngine

logger = logging.getLogger(__name__)

POSITION_FRACTION = 0.005
SECONDARY_SIGNAL_MCS = 0.8
SECONDARY_SIGNAL_PROBABILITY = 0.5
SECONDARY_CONFIDENCE = 0.75
PRIMARY_PAIR = "BTC/USD"
SECONDARY_PAIR = "ETH/USD"


@dataclass(slots=True)
class BotBSettings:
    min_mcs: float = 0.5
    max_daily_trades: int = 2
    primary_pair: str = PRIMARY_PAIR
    secondary_pair: str = SECONDARY_PAIR

    @classmethod
    def from_config(cls, config: TradingEnvironmentConfig) -> "BotBSettings":
        return cls(min_mcs=config.min_mcs_b, max_daily_trades=config.max_daily_trades_b)


class BotBEngine(GuardedEngine):
    """Conservative agent gated by ``agent_b_enabled``."""

    agent = AgentId.B

    def __init__(
        self,
        *,
        store: StateStore,
        exchange: ExchangeClient,
        sentiment: SentimentService,
        risk_engine: RiskEngine,
        strategy: ExecutionStrategy | None,
        settings: BotBSettings | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(strategy=strategy, clock=clock)
        self.store = store
        self.exchange = exchange
        self.sentiment = sentiment
        self.risk_engine = risk_engine
        self.settings = settings or BotBSettings()
        self._rng = rng or random.Random()

    def position_size(self, balance: float, assessment: RiskAssessment) -> float:
        return round_to(
            max(0.0, min(POSITION_FRACTION * balance, assessment.risk_based_size(balance))), 2
        )

    def generate_signals(self, mcs: float, trend: TrendAnalysis) -> list[TradeSignal]:
        """Zero to two buy signals for a bullish primary trend."""
        if trend.signal is not TrendSignal.BULLISH:
            return []
        signals = [
            TradeSignal(
                agent=self.agent,
                pair=self.settings.primary_pair,
                side=TradeSide.BUY,
                confidence=min(0.8 + trend.trend_score * 0.2, 1.0),
                reason="bullish primary trend",
            )
        ]
        if mcs >= SECONDARY_SIGNAL_MCS and self._rng.random() > SECONDARY_SIGNAL_PROBABILITY:
            signals.append(
                TradeSignal(
                    agent=self.agent,
                    pair=self.settings.secondary_pair,
                    side=TradeSide.BUY,
                    confidence=SECONDARY_CONFIDENCE,
                    reason=f"high confidence market (mcs {mcs:.2f})",
                )
            )
        return signals

    async def _run_tick(self) -> TickResult:
        if self.strategy is None:
            logger.debug("%s trading disabled", self.name)
            return TickResult(TickOutcome.DISABLED, "trading disabled")

        state = await self.store.read_latest_ledger_state()
        if not state.agent_b_enabled:
            logger.debug("%s waiting for agent A's first cycle", self.name)
            return TickResult(TickOutcome.DISABLED, "agent B not enabled", ledger=state)

        mcs = await self.sentiment.get_latest_mcs()
        if mcs < self.settings.min_mcs:
            logger.info("%s skipped: MCS %.2f below %.2f", self.name, mcs, self.settings.min_mcs)
            return TickResult(TickOutcome.MCS_BLOCKED, f"mcs {mcs:.2f}", ledger=state)

        trend = await self.sentiment.get_trend_analysis(self.settings.primary_pair)
        if trend.signal is not TrendSignal.BULLISH:
            logger.info("%s skipped: trend %s", self.name, trend.signal.value)
            return TickResult(TickOutcome.NO_SIGNAL, f"trend {trend.signal.value}", ledger=state)

        now = self._clock()
        traded_today = await self.store.count_trades_since(self.agent, start_of_day(now))
        remaining = self.settings.max_daily_trades - traded_today
        if remaining <= 0:
            logger.info("%s daily trade limit reached (%d)", self.name, traded_today)
            return TickResult(TickOutcome.LIMIT_REACHED, f"{traded_today} trades today", ledger=state)

        assessment = self.risk_engine.assess_risk(self.agent, mcs)
        signals = self.generate_signals(mcs, trend)[:remaining]
        prices = await self.exchange.get_ticker([s.pair for s in signals])

        balance = state.agent_b_balance
        trades: list[Trade] = []
        for signal in signals:
            size = self.position_size(balance, assessment)
            price = prices.get(signal.pair)
            try:
                if size < assessment.min_trade_size:
                    raise ValidationError(
                        f"{signal.pair} size ${size:.2f} below minimum ${assessment.min_trade_size:.2f}"
                    )
                if not is_positive_finite(price):
                    raise ValidationError(f"invalid price for {signal.pair}: {price!r}")
                fill = await self.strategy.execute(signal, size, price, assessment)
            except ValidationError as exc:
                logger.info("%s signal dropped: %s", self.name, exc)
                continue

            trade = Trade(
                agent=self.agent,
                pair=signal.pair,
                side=signal.side,
                size=fill.size,
                entry_price=fill.price,
                pnl=fill.pnl,
                usd_amount=fill.usd_amount,
                mcs=mcs,
                execution_mode=self.strategy.mode,
                order_id=fill.order_id,
                timestamp=now,
            )
            trades.append(await self.store.append_trade(trade, LedgerDelta.agent_b_pnl(fill.pnl)))
            balance += fill.pnl
            logger.info(
                "%s executed %s $%.2f %s @ %.2f (pnl %+.2f)",
                self.name,
                signal.side.value,
                size,
                signal.pair,
                fill.price,
                fill.pnl,
            )

        if not trades:
            return TickResult(TickOutcome.SIGNAL_DROPPED, "no signal met the minimum size", ledger=state)
        return TickResult(TickOutcome.TRADE_EXECUTED, ",".join(t.pair for t in trades), trades=trades)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_status(self) -> dict[str, Any]:
        status = self._base_status()
        state = await self.store.read_latest_ledger_state()
        now = self._clock()
        status.update(
            {
                "agent_b_enabled": state.agent_b_enabled,
                "balance": round_to(state.agent_b_balance, 2),
                "trades_today": await self.store.count_trades_since(self.agent, start_of_day(now)),
                "max_daily_trades": self.settings.max_daily_trades,
            }
        )
        return status

    async def get_statistics(self, days: int = 30) -> TradeStatistics:
        since = self._clock() - timedelta(days=days)
        return TradeStatistics.from_trades(self.agent, await self.store.list_trades(self.agent, since))
