"""Last check before a live order reaches the exchange.

``LiveTradeGuard.validate()`` raises :class:`ValidationError` when any of
these holds:

  * ``EMERGENCY_STOP`` is set,
  * the pair is not one of the traded pairs,
  * the order exceeds ``MAX_LIVE_POSITION_USD``,
  * the stop/target levels give a risk/reward below ``MIN_RISK_REWARD``,
  * today's realised loss plus this order's stop-loss exposure exceeds the
    agent's daily loss limit.

Today's loss is read from the trade log, not from process memory.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from agent_config import TradingEnvironmentConfig
from core.errors import ValidationError
from database.base_store import StateStore
from models.ledger import AgentId, utcnow
from risk_engine.daily_limits import daily_loss_from_trades, start_of_day
from risk_engine.risk_profiles import TradeRisk

logger = logging.getLogger(__name__)

TRADED_PAIRS = ("BTC/USD", "ETH/USD")


@dataclass(slots=True)
class TradeGuardSettings:
    emergency_stop: bool = False
    max_position_usd: float = 60.0
    min_risk_reward: float = 1.5
    max_daily_loss: dict[AgentId, float] = field(
        default_factory=lambda: {AgentId.A: 100.0, AgentId.B: 50.0}
    )
    allowed_pairs: tuple[str, ...] = TRADED_PAIRS

    @classmethod
    def from_config(cls, config: TradingEnvironmentConfig) -> "TradeGuardSettings":
        return cls(
            emergency_stop=config.emergency_stop,
            max_position_usd=config.max_live_position_usd,
            min_risk_reward=config.min_risk_reward,
            max_daily_loss={AgentId.A: config.max_daily_loss_a, AgentId.B: config.max_daily_loss_b},
        )


class LiveTradeGuard:
    def __init__(
        self,
        *,
        store: StateStore,
        settings: TradeGuardSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or TradeGuardSettings()
        self._clock = clock

    async def rejection_reason(
        self, agent: AgentId, pair: str, usd_amount: float, risk: TradeRisk
    ) -> str | None:
        settings = self.settings
        if settings.emergency_stop:
            return "EMERGENCY_STOP is enabled, all trading halted"
        if pair not in settings.allowed_pairs:
            return f"pair {pair} is not traded"
        if usd_amount > settings.max_position_usd:
            return f"order ${usd_amount:.2f} exceeds live maximum ${settings.max_position_usd:.2f}"
        # two decimals: 0.03 / 0.02 must read as 1.5
        if round(risk.risk_reward_ratio, 2) < settings.min_risk_reward:
            return (
                f"risk/reward {risk.risk_reward_ratio:.2f} below minimum {settings.min_risk_reward:.2f}"
            )

        limit = settings.max_daily_loss.get(agent)
        if limit is not None:
            trades = await self.store.list_trades(agent, start_of_day(self._clock()))
            daily_loss = daily_loss_from_trades(trades)
            if daily_loss + risk.max_loss_usd > limit:
                return (
                    f"daily loss ${daily_loss:.2f} + potential ${risk.max_loss_usd:.2f} "
                    f"exceeds limit ${limit:.2f}"
                )
        return None

    async def validate(self, agent: AgentId, pair: str, usd_amount: float, risk: TradeRisk) -> None:
        reason = await self.rejection_reason(agent, pair, usd_amount, risk)
        if reason is not None:
            logger.warning("Live trade blocked for agent %s: %s", agent.value, reason)
            raise ValidationError(reason)
