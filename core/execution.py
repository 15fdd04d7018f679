"""core/execution.py — how an approved trade signal turns into a fill.

SAFETY CONTRACT
===============
Two strategies, chosen once from configuration when an engine is built:

  SimulationStrategy  — NO ORDERS. Draws a bounded random gain/loss whose
                        odds follow the signal confidence.  Used with
                        SIMULATION_MODE=true.
  LiveStrategy        — LIVE ORDERS. Submits a market order through the
                        ExchangeClient and records pnl 0 at entry; profit is
                        realised outside this process.  Every order first
                        passes LiveTradeGuard.

An engine never switches strategy mid-session and never falls back from
live to simulation on an error: exchange failures propagate as
ExchangeError and the tick is abandoned.  Once an order is placed it is
always returned as a fill, even when the exchange reports an unusable price.
"""
from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from adapters.base_adapter import ExchangeClient
from core.balance_cache import BalanceCache
from core.errors import ConfigurationError, ValidationError
from core.numeric import is_positive_finite, round_to
from models.ledger import AgentId, ExecutionMode, TradeSide
from risk_engine.risk_profiles import RiskAssessment, trade_risk
from risk_engine.trade_guard import LiveTradeGuard

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TradeSignal:
    agent: AgentId
    pair: str
    side: TradeSide
    confidence: float
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Fill:
    price: float
    size: float
    usd_amount: float
    pnl: float
    order_id: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SimulationProfile:
    slippage: float
    confidence_bonus: float
    max_win_probability: float
    gain_range: tuple[float, float]
    loss_range: tuple[float, float]


# ── tunables ───────────────────────────────────────────────────────────────
SIMULATION_PROFILES: dict[AgentId, SimulationProfile] = {
    AgentId.A: SimulationProfile(
        slippage=0.001,
        confidence_bonus=0.0,
        max_win_probability=1.0,
        gain_range=(0.02, 0.08),
        loss_range=(0.01, 0.04),
    ),
    AgentId.B: SimulationProfile(
        slippage=0.002,
        confidence_bonus=0.15,
        max_win_probability=0.95,
        gain_range=(0.01, 0.04),
        loss_range=(0.005, 0.02),
    ),
}


class ExecutionStrategy(ABC):
    mode: ExecutionMode

    @abstractmethod
    async def execute(
        self,
        signal: TradeSignal,
        usd_amount: float,
        market_price: float,
        assessment: RiskAssessment,
    ) -> Fill:
        raise NotImplementedError


class SimulationStrategy(ExecutionStrategy):
    """Paper fills with pseudo-random pnl.

    Args:
        profile: Slippage and gain/loss bounds for the agent.
        rng: Random source; inject a seeded ``random.Random`` for tests.
    """

    mode = ExecutionMode.SIMULATION

    def __init__(self, profile: SimulationProfile, rng: random.Random | None = None) -> None:
        self.profile = profile
        self._rng = rng or random.Random()

    def win_probability(self, confidence: float) -> float:
        return min(confidence + self.profile.confidence_bonus, self.profile.max_win_probability)

    async def execute(
        self,
        signal: TradeSignal,
        usd_amount: float,
        market_price: float,
        assessment: RiskAssessment,
    ) -> Fill:
        slip = self._rng.uniform(-self.profile.slippage, self.profile.slippage)
        price = market_price * (1 + slip)
        if self._rng.random() < self.win_probability(signal.confidence):
            pnl = usd_amount * self._rng.uniform(*self.profile.gain_range)
        else:
            pnl = -usd_amount * self._rng.uniform(*self.profile.loss_range)

        risk = trade_risk(signal.side, price, usd_amount, assessment)
        logger.info(
            "[SIM] agent %s %s $%.2f %s @ %.2f → pnl %+.2f",
            signal.agent.value,
            signal.side.value,
            usd_amount,
            signal.pair,
            price,
            pnl,
        )
        return Fill(
            price=price,
            size=usd_amount / price,
            usd_amount=usd_amount,
            pnl=round_to(pnl, 2),
            meta=risk.as_meta(),
        )


class LiveStrategy(ExecutionStrategy):
    """Real market orders through *exchange*.

    Args:
        exchange: Order routing.
        balance_cache: Account value, checked against the order amount.
        guard: Pre-order limits; ``None`` skips them.
    """

    mode = ExecutionMode.LIVE

    def __init__(
        self,
        exchange: ExchangeClient,
        balance_cache: BalanceCache,
        guard: LiveTradeGuard | None = None,
    ) -> None:
        self.exchange = exchange
        self.balance_cache = balance_cache
        self.guard = guard

    async def execute(
        self,
        signal: TradeSignal,
        usd_amount: float,
        market_price: float,
        assessment: RiskAssessment,
    ) -> Fill:
        risk = trade_risk(signal.side, market_price, usd_amount, assessment)
        if self.guard is not None:
            await self.guard.validate(signal.agent, signal.pair, usd_amount, risk)

        available = await self.balance_cache.get_cached_balance()
        if available < usd_amount:
            raise ValidationError(
                f"account value ${available:.2f} cannot cover ${usd_amount:.2f} order"
            )

        size = usd_amount / market_price
        meta = {"agent": signal.agent.value, "reason": signal.reason, **risk.as_meta()}
        result = await self.exchange.place_order(signal.pair, signal.side, "market", size, meta)
        # the account changed; the next read must refetch
        self.balance_cache.invalidate()

        price = result.price
        if not is_positive_finite(price):
            logger.error(
                "[LIVE] order %s for agent %s filled with invalid price %r; recording at ticker %.2f",
                result.order_id,
                signal.agent.value,
                price,
                market_price,
            )
            price = market_price
            meta["fill_price_reported"] = result.price

        logger.warning(
            "[LIVE] agent %s %s %.8f %s @ %.2f (order %s)",
            signal.agent.value,
            signal.side.value,
            size,
            signal.pair,
            price,
            result.order_id,
        )
        return Fill(
            price=price,
            size=size,
            usd_amount=usd_amount,
            pnl=0.0,
            order_id=result.order_id,
            meta=meta,
        )


def build_strategy(
    mode: str | None,
    agent: AgentId,
    *,
    exchange: ExchangeClient,
    balance_cache: BalanceCache,
    guard: LiveTradeGuard | None = None,
    rng: random.Random | None = None,
) -> ExecutionStrategy | None:
    """Return the strategy for *mode*, or ``None`` when trading is disabled."""
    if mode is None:
        return None
    if mode == ExecutionMode.SIMULATION.value:
        return SimulationStrategy(SIMULATION_PROFILES[agent], rng)
    if mode == ExecutionMode.LIVE.value:
        return LiveStrategy(exchange, balance_cache, guard)
    raise ConfigurationError(f"Unknown execution mode {mode!r}")
