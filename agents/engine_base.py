"""
agents/engine_base.py — tick lifecycle shared by the two trading engines.

``GuardedEngine.tick()`` is what the scheduler calls.  It

  * skips (and logs) a tick while the previous one is still awaiting I/O,
  * runs the subclass's ``_run_tick()``,
  * turns the expected failure types into a ``TickResult`` so one bad tick
    never reaches the scheduler or a sibling engine.

Unexpected exceptions are not swallowed here; the scheduler's job wrapper
logs them.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from core.errors import ExternalServiceError, PersistenceError, ValidationError
from core.execution import ExecutionStrategy
from models.ledger import AgentId, LedgerState, Trade, utcnow

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    DISABLED = "disabled"
    SKIPPED_IN_FLIGHT = "skipped-in-flight"
    RISK_BLOCKED = "risk-blocked"
    MCS_BLOCKED = "mcs-blocked"
    LIMIT_REACHED = "limit-reached"
    NO_SIGNAL = "no-signal"
    SIGNAL_DROPPED = "signal-dropped"
    CYCLE_COMPLETE = "cycle-complete"
    TRADE_EXECUTED = "trade-executed"
    FAILED = "failed"


@dataclass(slots=True)
class TickResult:
    outcome: TickOutcome
    detail: str = ""
    trades: list[Trade] = field(default_factory=list)
    ledger: Optional[LedgerState] = None
    at: datetime = field(default_factory=utcnow)


class GuardedEngine(ABC):
    agent: AgentId

    def __init__(
        self,
        *,
        strategy: ExecutionStrategy | None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.strategy = strategy
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self.last_result: TickResult | None = None
        self.ticks_run = 0
        self.ticks_skipped = 0

    @property
    def name(self) -> str:
        return f"bot-{self.agent.value.lower()}"

    @property
    def in_flight(self) -> bool:
        return self._tick_lock.locked()

    @property
    def execution_mode(self) -> str | None:
        return self.strategy.mode.value if self.strategy is not None else None

    async def tick(self) -> TickResult:
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.warning("%s tick skipped: previous tick still in flight", self.name)
            return TickResult(TickOutcome.SKIPPED_IN_FLIGHT, "previous tick still in flight")

        async with self._tick_lock:
            self.ticks_run += 1
            try:
                result = await self._run_tick()
            except ValidationError as exc:
                logger.info("%s signal dropped: %s", self.name, exc)
                result = TickResult(TickOutcome.SIGNAL_DROPPED, str(exc))
            except ExternalServiceError as exc:
                logger.warning("%s tick abandoned, %s unavailable: %s", self.name, exc.service, exc)
                result = TickResult(TickOutcome.FAILED, str(exc))
            except PersistenceError as exc:
                logger.error("%s tick failed to persist: %s", self.name, exc)
                result = TickResult(TickOutcome.FAILED, str(exc))

        self.last_result = result
        return result

    @abstractmethod
    async def _run_tick(self) -> TickResult:
        raise NotImplementedError

    def _base_status(self) -> dict[str, Any]:
        last = self.last_result
        return {
            "agent": self.agent.value,
            "enabled": self.strategy is not None,
            "execution_mode": self.execution_mode,
            "in_flight": self.in_flight,
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
            "last_outcome": last.outcome.value if last else None,
            "last_detail": last.detail if last else None,
            "last_tick_at": last.at.isoformat() if last else None,
        }
