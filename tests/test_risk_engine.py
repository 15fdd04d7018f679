from __future__ import annotations

from pathlib import Path

import pytest

from core.errors import ConfigurationError
from models.ledger import AgentId, TradeSide
from risk_engine.risk_profiles import RiskEngine, trade_risk

MCS_GRID = [i / 20 for i in range(21)]


class TestAssessRisk:
    @pytest.mark.parametrize("agent", list(AgentId))
    def test_size_never_shrinks_as_mcs_rises(self, risk_engine: RiskEngine, agent: AgentId) -> None:
        sizes = [risk_engine.assess_risk(agent, mcs).max_position_size for mcs in MCS_GRID]
        fractions = [risk_engine.assess_risk(agent, mcs).max_risk_per_trade for mcs in MCS_GRID]
        assert sizes == sorted(sizes)
        assert fractions == sorted(fractions)

    @pytest.mark.parametrize("agent", list(AgentId))
    def test_clamped_to_profile_ceiling(self, risk_engine: RiskEngine, agent: AgentId) -> None:
        profile = risk_engine.profile(agent)
        over = risk_engine.assess_risk(agent, 7.5)
        assert over == risk_engine.assess_risk(agent, 1.0)
        assert over.max_risk_per_trade == pytest.approx(profile.fraction_ceiling)
        assert over.max_position_size == pytest.approx(profile.absolute_cap_usd)

    def test_agent_b_is_at_least_fifty_times_tighter(self, risk_engine: RiskEngine) -> None:
        for mcs in MCS_GRID:
            a = risk_engine.assess_risk(AgentId.A, mcs)
            b = risk_engine.assess_risk(AgentId.B, mcs)
            assert a.max_risk_per_trade >= 50 * b.max_risk_per_trade
            assert a.max_position_size > b.max_position_size

    def test_minimum_trade_sizes(self, risk_engine: RiskEngine) -> None:
        assert risk_engine.assess_risk(AgentId.A, 0.6).min_trade_size == 10.0
        assert risk_engine.assess_risk(AgentId.B, 0.6).min_trade_size == 25.0

    def test_daily_limits_and_levels(self, risk_engine: RiskEngine) -> None:
        assert risk_engine.assess_risk(AgentId.A, 0.85).max_daily_trades == 6
        assert risk_engine.assess_risk(AgentId.A, 0.3).max_daily_trades == 0
        assert risk_engine.assess_risk(AgentId.B, 0.75).max_daily_trades == 2
        assert risk_engine.assess_risk(AgentId.A, 0.9).risk_level == "low"
        assert risk_engine.assess_risk(AgentId.A, 0.1).risk_level == "extreme"

    def test_risk_based_size_respects_absolute_cap(self, risk_engine: RiskEngine) -> None:
        b = risk_engine.assess_risk(AgentId.B, 0.9)
        assert b.risk_based_size(1_000.0) == pytest.approx(10.0)
        assert b.risk_based_size(1_000_000.0) == pytest.approx(60.0)

    def test_is_deterministic(self, risk_engine: RiskEngine) -> None:
        assert risk_engine.assess_risk(AgentId.A, 0.55) == risk_engine.assess_risk(AgentId.A, 0.55)


def test_trade_risk_levels(risk_engine: RiskEngine) -> None:
    assessment = risk_engine.assess_risk(AgentId.B, 0.7)
    risk = trade_risk(TradeSide.BUY, 100.0, 50.0, assessment)
    assert risk.stop_loss_price == pytest.approx(98.0)
    assert risk.take_profit_price == pytest.approx(103.0)
    assert risk.max_loss_usd == pytest.approx(1.0)
    assert set(risk.as_meta()) == {"stop_loss", "take_profit", "risk_reward"}


class TestProfileLoading:
    def test_missing_file_is_configuration_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            RiskEngine(tmp_path / "nope.yaml")

    def test_decreasing_scales_rejected(self, tmp_path: Path) -> None:
        profile = """
    fraction_ceiling: 0.5
    absolute_cap_usd: 100
    min_trade_usd: 10
    mcs_tiers:
      - {mcs_threshold: 0.7, scale: 0.2}
      - {mcs_threshold: 0.0, scale: 1.0}
    daily_trade_limits:
      - {mcs_threshold: 0.0, trades: 1}
    exits:
      - {mcs_threshold: 0.0, stop_loss_pct: 0.02, take_profit_pct: 0.04}
"""
        config = tmp_path / "profiles.yaml"
        config.write_text(
            "profiles:\n  A:" + profile + "  B:" + profile
            + "risk_levels:\n  - {mcs_threshold: 0.0, level: low}\n"
        )
        with pytest.raises(ConfigurationError, match="must not decrease"):
            RiskEngine(config)

    def test_missing_profile_key_rejected(self, tmp_path: Path) -> None:
        config = tmp_path / "profiles.yaml"
        config.write_text("profiles: {}\nrisk_levels: []\n")
        with pytest.raises(ConfigurationError):
            RiskEngine(config)
