from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from core.errors import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

STATE_BACKENDS = ("sqlite", "postgres")
EXCHANGE_BACKENDS = ("paper", "kraken")


@dataclass(slots=True)
class TradingEnvironmentConfig:
    # trading surface
    trade_amount_usd: float
    max_open_positions_a: int
    max_daily_loss_a: float
    min_mcs_a: float
    min_mcs_b: float
    max_daily_trades_b: int
    allow_live_trading: bool
    simulation_mode: bool
    # live-order guard
    emergency_stop: bool
    max_live_position_usd: float
    min_risk_reward: float
    max_daily_loss_b: float
    # state store
    state_backend: str
    sqlite_path: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_pass: str
    db_pool_min: int
    db_pool_max: int
    db_command_timeout: float
    # external services
    exchange_backend: str
    kraken_api_key: str
    kraken_api_secret: str
    fgi_url: str
    http_timeout_seconds: float
    # cadence
    bot_a_interval_seconds: int
    bot_b_interval_seconds: int
    sentiment_interval_seconds: int
    market_interval_seconds: int
    risk_profiles_path: str

    @property
    def trading_enabled(self) -> bool:
        return self.execution_mode is not None

    @property
    def execution_mode(self) -> str | None:
        """``simulation`` / ``live`` / ``None`` when trading is off or halted."""
        if self.emergency_stop:
            return None
        if self.simulation_mode:
            return "simulation"
        if self.allow_live_trading:
            return "live"
        return None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_number(name: str, default: str, cast: type) -> float | int:
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a {cast.__name__}, got {raw!r}") from exc


def _validate(config: TradingEnvironmentConfig) -> None:
    for name in ("min_mcs_a", "min_mcs_b"):
        value = getattr(config, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{name.upper()} must lie in [0, 1], got {value}")
    if config.trade_amount_usd <= 0:
        raise ConfigurationError("TRADE_AMOUNT_USD must be positive")
    for name in ("max_daily_loss_a", "max_daily_loss_b", "max_live_position_usd"):
        if getattr(config, name) <= 0:
            raise ConfigurationError(f"{name.upper()} must be positive")
    if config.min_risk_reward < 0:
        raise ConfigurationError("MIN_RISK_REWARD cannot be negative")
    if config.max_open_positions_a < 0 or config.max_daily_trades_b < 0:
        raise ConfigurationError("position and trade limits cannot be negative")

    if config.state_backend not in STATE_BACKENDS:
        raise ConfigurationError(
            f"STATE_BACKEND must be one of {STATE_BACKENDS}, got {config.state_backend!r}"
        )
    if config.state_backend == "postgres" and not config.db_host:
        raise ConfigurationError("STATE_BACKEND=postgres requires DB_HOST")

    if config.exchange_backend not in EXCHANGE_BACKENDS:
        raise ConfigurationError(
            f"EXCHANGE_BACKEND must be one of {EXCHANGE_BACKENDS}, got {config.exchange_backend!r}"
        )
    needs_keys = config.exchange_backend == "kraken" or config.execution_mode == "live"
    if needs_keys and not (config.kraken_api_key and config.kraken_api_secret):
        raise ConfigurationError(
            "KRAKEN_API_KEY and KRAKEN_API_SECRET are required for the kraken backend and live trading"
        )
    if config.execution_mode == "live" and config.exchange_backend != "kraken":
        raise ConfigurationError("ALLOW_LIVE_TRADING requires EXCHANGE_BACKEND=kraken")

    for name in (
        "bot_a_interval_seconds",
        "bot_b_interval_seconds",
        "sentiment_interval_seconds",
        "market_interval_seconds",
    ):
        if getattr(config, name) <= 0:
            raise ConfigurationError(f"{name.upper()} must be positive")


def load_trading_environment(env_file: str = ".env") -> TradingEnvironmentConfig:
    """Read the process environment (after ``.env``) into a validated config.

    Raises:
        ConfigurationError: on unparsable values, missing credentials or an
            unknown backend.  Callers must not start scheduling after this.
    """
    load_dotenv(env_file, override=False)

    config = TradingEnvironmentConfig(
        trade_amount_usd=_env_number("TRADE_AMOUNT_USD", "25", float),
        max_open_positions_a=_env_number("MAX_OPEN_POSITIONS_A", "3", int),
        max_daily_loss_a=_env_number("MAX_DAILY_LOSS_A", "100", float),
        min_mcs_a=_env_number("MIN_MCS_A", "0.4", float),
        min_mcs_b=_env_number("MIN_MCS_B", "0.5", float),
        max_daily_trades_b=_env_number("MAX_DAILY_TRADES_B", "2", int),
        allow_live_trading=_env_bool("ALLOW_LIVE_TRADING", False),
        simulation_mode=_env_bool("SIMULATION_MODE", True),
        emergency_stop=_env_bool("EMERGENCY_STOP", False),
        max_live_position_usd=_env_number("MAX_LIVE_POSITION_USD", "60", float),
        min_risk_reward=_env_number("MIN_RISK_REWARD", "1.5", float),
        max_daily_loss_b=_env_number("MAX_DAILY_LOSS_B", "50", float),
        state_backend=os.getenv("STATE_BACKEND", "sqlite").strip().lower(),
        sqlite_path=os.getenv("SQLITE_PATH", "data/charity_bot.db"),
        db_host=os.getenv("DB_HOST", ""),
        db_port=_env_number("DB_PORT", "5432", int),
        db_name=os.getenv("DB_NAME", "charity_bot"),
        db_user=os.getenv("DB_USER", "charity_bot"),
        db_pass=os.getenv("DB_PASS", ""),
        db_pool_min=_env_number("DB_POOL_MIN", "1", int),
        db_pool_max=_env_number("DB_POOL_MAX", "10", int),
        db_command_timeout=_env_number("DB_COMMAND_TIMEOUT", "10", float),
        exchange_backend=os.getenv("EXCHANGE_BACKEND", "paper").strip().lower(),
        kraken_api_key=os.getenv("KRAKEN_API_KEY", ""),
        kraken_api_secret=os.getenv("KRAKEN_API_SECRET", ""),
        fgi_url=os.getenv("FGI_URL", "https://api.alternative.me/fng/"),
        http_timeout_seconds=_env_number("HTTP_TIMEOUT_SECONDS", "10", float),
        bot_a_interval_seconds=_env_number("BOT_A_INTERVAL_SECONDS", "300", int),
        bot_b_interval_seconds=_env_number("BOT_B_INTERVAL_SECONDS", "900", int),
        sentiment_interval_seconds=_env_number("SENTIMENT_INTERVAL_SECONDS", "3600", int),
        market_interval_seconds=_env_number("MARKET_INTERVAL_SECONDS", "120", int),
        risk_profiles_path=os.getenv("RISK_PROFILES_PATH", "config/risk_profiles.yaml"),
    )
    _validate(config)
    return config
