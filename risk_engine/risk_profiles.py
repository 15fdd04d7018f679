"""risk_engine/risk_profiles.py — MCS-driven position sizing per agent.

``RiskEngine.assess_risk(agent, mcs)`` is pure: the profiles are read from
YAML once at construction and every assessment is a lookup plus arithmetic.

Agent A is the aggressive profile (half the balance per trade at most, $100
absolute cap, $10 minimum).  Agent B sizes with a fraction fifty times tighter
and needs at least $25 per trade.  Within a profile the allowed size never
shrinks as MCS rises and never exceeds the profile ceiling.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from core.errors import ConfigurationError
from core.numeric import clamp, risk_reward_ratio, stop_loss_price, take_profit_price
from models.ledger import AgentId, TradeSide

logger = logging.getLogger(__name__)

_DEFAULT_PROFILES_PATH = Path(__file__).parent.parent / "config" / "risk_profiles.yaml"


@dataclass(frozen=True, slots=True)
class _Tier:
    mcs_threshold: float
    value: Any


def _pick(tiers: list[_Tier], mcs: float) -> Any:
    """Return the value of the highest tier whose threshold is <= *mcs*."""
    for tier in tiers:
        if mcs >= tier.mcs_threshold:
            return tier.value
    return tiers[-1].value


@dataclass(slots=True)
class RiskProfile:
    agent: AgentId
    fraction_ceiling: float
    absolute_cap_usd: float
    min_trade_usd: float
    mcs_tiers: list[_Tier] = field(default_factory=list)
    daily_trade_limits: list[_Tier] = field(default_factory=list)
    exits: list[_Tier] = field(default_factory=list)

    def scale(self, mcs: float) -> float:
        return float(_pick(self.mcs_tiers, mcs))


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    agent: AgentId
    mcs: float
    max_position_size: float
    max_risk_per_trade: float
    min_trade_size: float
    max_daily_trades: int
    stop_loss_pct: float
    take_profit_pct: float
    risk_level: str

    def risk_based_size(self, balance: float) -> float:
        """USD size allowed by this assessment for a given balance."""
        return max(0.0, min(balance * self.max_risk_per_trade, self.max_position_size))


@dataclass(frozen=True, slots=True)
class TradeRisk:
    stop_loss_price: float
    take_profit_price: float
    risk_reward_ratio: float
    max_loss_usd: float

    def as_meta(self) -> dict[str, float]:
        return {
            "stop_loss": round(self.stop_loss_price, 2),
            "take_profit": round(self.take_profit_price, 2),
            "risk_reward": round(self.risk_reward_ratio, 2),
        }


def trade_risk(
    side: TradeSide, entry_price: float, usd_amount: float, assessment: RiskAssessment
) -> TradeRisk:
    """Stop-loss / take-profit levels for one order sized by *assessment*."""
    stop = stop_loss_price(entry_price, assessment.stop_loss_pct, side.value)
    target = take_profit_price(entry_price, assessment.take_profit_pct, side.value)
    return TradeRisk(
        stop_loss_price=stop,
        take_profit_price=target,
        risk_reward_ratio=risk_reward_ratio(entry_price, stop, target),
        max_loss_usd=usd_amount * assessment.stop_loss_pct,
    )


# ---------------------------------------------------------------------------
# YAML parsing
# ---------------------------------------------------------------------------


def _parse_tiers(raw: Any, value_key: str | tuple[str, ...], where: str) -> list[_Tier]:
    if not raw:
        raise ConfigurationError(f"{where}: at least one tier is required")
    tiers: list[_Tier] = []
    try:
        for entry in raw:
            threshold = float(entry["mcs_threshold"])
            if isinstance(value_key, tuple):
                value = tuple(float(entry[k]) for k in value_key)
            else:
                value = entry[value_key]
            tiers.append(_Tier(threshold, value))
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}: malformed tier ({exc})") from exc
    return sorted(tiers, key=lambda t: t.mcs_threshold, reverse=True)


def _parse_profile(agent: AgentId, raw: dict[str, Any]) -> RiskProfile:
    where = f"risk profile {agent.value}"
    try:
        profile = RiskProfile(
            agent=agent,
            fraction_ceiling=float(raw["fraction_ceiling"]),
            absolute_cap_usd=float(raw["absolute_cap_usd"]),
            min_trade_usd=float(raw["min_trade_usd"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}: {exc}") from exc

    profile.mcs_tiers = _parse_tiers(raw.get("mcs_tiers"), "scale", where)
    profile.daily_trade_limits = _parse_tiers(raw.get("daily_trade_limits"), "trades", where)
    profile.exits = _parse_tiers(
        raw.get("exits"), ("stop_loss_pct", "take_profit_pct"), where
    )

    # Tiers are sorted high → low; scales must follow the same order.
    scales = [float(t.value) for t in profile.mcs_tiers]
    if any(s < 0 or s > 1 for s in scales):
        raise ConfigurationError(f"{where}: tier scales must lie in [0, 1]")
    if scales != sorted(scales, reverse=True):
        raise ConfigurationError(f"{where}: tier scales must not decrease as MCS rises")
    if not 0 < profile.fraction_ceiling <= 1:
        raise ConfigurationError(f"{where}: fraction_ceiling must be in (0, 1]")
    return profile


class RiskEngine:
    """Map (agent, MCS) to a :class:`RiskAssessment`."""

    def __init__(self, config_path: str | Path = _DEFAULT_PROFILES_PATH) -> None:
        self.config_path = Path(config_path)
        raw = self._load_config()
        self._profiles = {
            agent: _parse_profile(agent, (raw.get("profiles") or {}).get(agent.value) or {})
            for agent in AgentId
        }
        self._risk_levels = _parse_tiers(raw.get("risk_levels"), "level", "risk_levels")
        logger.debug("Loaded risk profiles from %s", self.config_path)

    def _load_config(self) -> dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigurationError(f"Risk profile config not found: {self.config_path}")
        try:
            with self.config_path.open("r", encoding="utf-8") as config_file:
                return yaml.safe_load(config_file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid risk profile YAML: {exc}") from exc

    def profile(self, agent: AgentId) -> RiskProfile:
        return self._profiles[agent]

    def assess_risk(self, agent: AgentId, mcs: float) -> RiskAssessment:
        profile = self._profiles[agent]
        score = clamp(mcs, 0.0, 1.0)
        scale = profile.scale(score)
        stop_loss_pct, take_profit_pct = _pick(profile.exits, score)
        return RiskAssessment(
            agent=agent,
            mcs=score,
            max_position_size=profile.absolute_cap_usd * scale,
            max_risk_per_trade=profile.fraction_ceiling * scale,
            min_trade_size=profile.min_trade_usd,
            max_daily_trades=int(_pick(profile.daily_trade_limits, score)),
            stop_loss_pct=stop_loss_pct,
            take_profit_pct=take_profit_pct,
            risk_level=str(_pick(self._risk_levels, score)),
        )
