"""
agents/bot_a_engine.py — Agent A: aggressive, cycle-based trading.

Agent A grows its virtual balance toward ``cycle_target``.  Once reached, the
cycle completes in one guarded ledger write:

    agent_a_balance := 30        cycle_number += 1
    cycle_target    += 30        agent_b_balance += 200
    agent_b_enabled := True

Otherwise each tick places at most one buy on the primary pair, sized
``min(TRADE_AMOUNT_USD, $25, 0.5 × balance)``.  Bearish trends are logged and
produce no signal: there is no short side.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from adapters.base_adapter import ExchangeClient
from agent_config import TradingEnvironmentConfig
from agents.engine_base import GuardedEngine, TickOutcome, TickResult
from agents.sentiment_service import SentimentService, TrendAnalysis
from core.errors import StaleLedgerError, ValidationError
from core.execution import ExecutionStrategy, TradeSignal
from core.numeric import is_positive_finite, round_to
from database.base_store import StateStore
from models.ledger import (
    CYCLE_TRANSFER,
    AgentId,
    LedgerDelta,
    LedgerState,
    Trade,
    TradeSide,
    TradeStatistics,
    TrendSignal,
    plan_cycle_completion,
    utcnow,
)
from risk_engine.daily_limits import DailyRiskLimits, start_of_day
from risk_engine.risk_profiles import RiskAssessment, RiskEngine

logger = logging.getLogger(__name__)

# Per-trade ceiling applied on top of TRADE_AMOUNT_USD.
HARD_CAP_USD = 25.0
BALANCE_FRACTION = 0.5
PRIMARY_PAIR = "BTC/USD"


@dataclass(slots=True)
class BotASettings:
    trade_amount_usd: float = 25.0
    min_mcs: float = 0.4
    max_daily_loss: float = 100.0
    max_open_positions: int = 3
    primary_pair: str = PRIMARY_PAIR

    @classmethod
    def from_config(cls, config: TradingEnvironmentConfig) -> "BotASettings":
        return cls(
            trade_amount_usd=config.trade_amount_usd,
            min_mcs=config.min_mcs_a,
            max_daily_loss=config.max_daily_loss_a,
            max_open_positions=config.max_open_positions_a,
        )


class BotAEngine(GuardedEngine):
    """Cycle-based agent that owns the A→B fund transfer.

    Args:
        store: Ledger and trade log.
        exchange: Ticker lookups (orders go through *strategy*).
        sentiment: MCS and trend provider.
        risk_engine: Position-sizing profiles.
        strategy: Simulation or live execution; ``None`` disables trading.
        settings: Thresholds and limits.
        clock: Current aware UTC datetime.
    """

    agent = AgentId.A

    def __init__(
        self,
        *,
        store: StateStore,
        exchange: ExchangeClient,
        sentiment: SentimentService,
        risk_engine: RiskEngine,
        strategy: ExecutionStrategy | None,
        settings: BotASettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(strategy=strategy, clock=clock)
        self.store = store
        self.exchange = exchange
        self.sentiment = sentiment
        self.risk_engine = risk_engine
        self.settings = settings or BotASettings()
        self.limits = DailyRiskLimits(
            max_daily_loss=self.settings.max_daily_loss,
            max_open_positions=self.settings.max_open_positions,
        )

    # ------------------------------------------------------------------
    # Sizing and signals
    # ------------------------------------------------------------------

    def trade_amount(self, balance: float, assessment: RiskAssessment) -> float:
        amount = min(
            self.settings.trade_amount_usd,
            HARD_CAP_USD,
            BALANCE_FRACTION * balance,
            assessment.max_position_size,
        )
        return round_to(max(amount, 0.0), 2)

    def signal_from_trend(self, trend: TrendAnalysis) -> TradeSignal | None:
        if trend.signal is TrendSignal.BULLISH:
            return TradeSignal(
                agent=self.agent,
                pair=trend.pair,
                side=TradeSide.BUY,
                confidence=min(0.7 + trend.trend_score * 0.3, 1.0),
                reason=f"bullish trend ({trend.deviation_pct:+.2f}% vs EMA)",
            )
        if trend.signal is TrendSignal.BEARISH:
            logger.info("%s bearish trend on %s, no short side", self.name, trend.pair)
        return None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _run_tick(self) -> TickResult:
        if self.strategy is None:
            logger.debug("%s trading disabled", self.name)
            return TickResult(TickOutcome.DISABLED, "trading disabled")

        now = self._clock()
        if self.limits.roll_over(now):
            self.limits.seed(await self.store.list_trades(self.agent, start_of_day(now)))
        blocked = self.limits.blocked_reason()
        if blocked:
            logger.info("%s risk limit reached: %s", self.name, blocked)
            return TickResult(TickOutcome.RISK_BLOCKED, blocked)

        state = await self.store.read_latest_ledger_state()

        mcs = await self.sentiment.get_latest_mcs()
        if mcs < self.settings.min_mcs:
            logger.info("%s skipped: MCS %.2f below %.2f", self.name, mcs, self.settings.min_mcs)
            return TickResult(TickOutcome.MCS_BLOCKED, f"mcs {mcs:.2f}", ledger=state)

        assessment = self.risk_engine.assess_risk(self.agent, mcs)

        if state.cycle_complete:
            return await self._complete_cycle(state)

        trend = await self.sentiment.get_trend_analysis(self.settings.primary_pair)
        signal = self.signal_from_trend(trend)
        if signal is None:
            return TickResult(TickOutcome.NO_SIGNAL, f"trend {trend.signal.value}", ledger=state)

        amount = self.trade_amount(state.agent_a_balance, assessment)
        if amount < assessment.min_trade_size:
            raise ValidationError(
                f"trade amount ${amount:.2f} below minimum ${assessment.min_trade_size:.2f}"
            )

        prices = await self.exchange.get_ticker([signal.pair])
        price = prices.get(signal.pair)
        if not is_positive_finite(price):
            raise ValidationError(f"invalid price for {signal.pair}: {price!r}")

        fill = await self.strategy.execute(signal, amount, price, assessment)
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
        delta = LedgerDelta.agent_a_pnl(fill.pnl) if fill.pnl else None
        trade = await self.store.append_trade(trade, delta)

        self.limits.record_pnl(fill.pnl)
        if fill.order_id is not None:
            self.limits.record_open_position()

        logger.info(
            "%s executed %s $%.2f %s @ %.2f (pnl %+.2f, cycle %d at %.0f%%)",
            self.name,
            trade.side.value,
            amount,
            trade.pair,
            trade.entry_price,
            trade.pnl,
            state.cycle_number,
            state.cycle_progress * 100,
        )
        return TickResult(TickOutcome.TRADE_EXECUTED, trade.pair, trades=[trade])

    async def _complete_cycle(self, state: LedgerState) -> TickResult:
        delta = plan_cycle_completion(state)
        try:
            updated = await self.store.write_ledger_state(delta)
        except StaleLedgerError as exc:
            logger.warning("%s cycle completion rejected: %s", self.name, exc)
            return TickResult(TickOutcome.FAILED, str(exc))

        logger.info(
            "%s cycle %d complete: $%.0f transferred to agent B, agent A reset to $%.0f, "
            "next target $%.0f",
            self.name,
            state.cycle_number,
            CYCLE_TRANSFER,
            updated.agent_a_balance,
            updated.cycle_target,
        )
        return TickResult(TickOutcome.CYCLE_COMPLETE, f"cycle {state.cycle_number}", ledger=updated)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_status(self) -> dict[str, Any]:
        status = self._base_status()
        status.update(
            {
                "daily_loss": round_to(self.limits.daily_loss, 2),
                "max_daily_loss": self.limits.max_daily_loss,
                "open_positions": self.limits.open_positions,
                "max_open_positions": self.limits.max_open_positions,
            }
        )
        state = await self.store.read_latest_ledger_state()
        status.update(
            {
                "balance": round_to(state.agent_a_balance, 2),
                "cycle_number": state.cycle_number,
                "cycle_target": state.cycle_target,
                "cycle_progress": round_to(state.cycle_progress, 4),
            }
        )
        return status

    async def get_statistics(self, days: int = 30) -> TradeStatistics:
        since = self._clock() - timedelta(days=days)
        return TradeStatistics.from_trades(self.agent, await self.store.list_trades(self.agent, since))
