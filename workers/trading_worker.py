"""trading_worker.py — process entry point for the two-agent charity bot.

Builds every collaborator explicitly from configuration, registers the
periodic jobs and runs until SIGINT/SIGTERM.  Nothing starts a timer at
import time.

Jobs
----
bot-a             every BOT_A_INTERVAL_SECONDS (300)
bot-b             every BOT_B_INTERVAL_SECONDS (900)
sentiment         every SENTIMENT_INTERVAL_SECONDS (3600)
market            every MARKET_INTERVAL_SECONDS (120)
status            hourly
daily-snapshot    00:00 UTC
weekly-snapshot   Monday 00:00 UTC
monthly-snapshot  1st of month 00:00 UTC
maintenance       00:10 UTC (prune sentiment readings, log statistics)
donation          last day of month 23:55 UTC

Usage
-----
    python -m workers.trading_worker
    python -m workers.trading_worker --once bot-a
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

# ---------------------------------------------------------------------------
# Make sure project root is on sys.path when run directly
# ---------------------------------------------------------------------------
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from adapters.base_adapter import ExchangeClient, SentimentSource
from adapters.fear_greed_adapter import FearGreedSource
from adapters.kraken_adapter import KrakenExchangeClient
from adapters.paper_exchange import PaperExchangeClient
from agent_config import TradingEnvironmentConfig, load_trading_environment
from agents.balance_snapshotter import BalanceSnapshotter
from agents.bot_a_engine import BotAEngine, BotASettings
from agents.bot_b_engine import BotBEngine, BotBSettings
from agents.donation_accountant import MonthlyDonationAccountant
from agents.market_monitor import MarketMonitor
from agents.sentiment_service import SentimentService
from core.balance_cache import BalanceCache
from core.errors import CharityBotError, ConfigurationError
from core.execution import build_strategy
from database.base_store import StateStore
from database.db_manager import DBManager
from database.local_store import LocalStore
from logging_config import setup_logging
from models.ledger import AgentId, SnapshotKind
from risk_engine.risk_profiles import RiskEngine
from risk_engine.trade_guard import LiveTradeGuard, TradeGuardSettings
from workers.scheduler import TradingScheduler

LOGGER = logging.getLogger("trading_worker")

ONCE_CHOICES = ("bot-a", "bot-b", "sentiment", "market", "donation", "snapshot", "status")


@dataclass(slots=True)
class Runtime:
    config: TradingEnvironmentConfig
    store: StateStore
    exchange: ExchangeClient
    sentiment_source: SentimentSource
    balance_cache: BalanceCache
    sentiment: SentimentService
    bot_a: BotAEngine
    bot_b: BotBEngine
    accountant: MonthlyDonationAccountant
    snapshotter: BalanceSnapshotter
    market: MarketMonitor
    scheduler: TradingScheduler

    async def close(self) -> None:
        self.scheduler.shutdown()
        await self.exchange.close()
        await self.sentiment_source.close()
        await self.store.close()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_store(config: TradingEnvironmentConfig) -> StateStore:
    if config.state_backend == "postgres":
        return DBManager(
            host=config.db_host,
            port=config.db_port,
            name=config.db_name,
            user=config.db_user,
            password=config.db_pass,
            pool_min=config.db_pool_min,
            pool_max=config.db_pool_max,
            command_timeout=config.db_command_timeout,
        )
    path = Path(config.sqlite_path)
    return LocalStore(str(path if path.is_absolute() else _ROOT / path))


def build_exchange(config: TradingEnvironmentConfig) -> ExchangeClient:
    if config.exchange_backend == "kraken":
        return KrakenExchangeClient(config.kraken_api_key, config.kraken_api_secret)
    return PaperExchangeClient()


def _resolve(path_str: str) -> Path:
    path = Path(path_str)
    return path if path.is_absolute() or path.exists() else _ROOT / path


def build_runtime(
    config: TradingEnvironmentConfig,
    *,
    store: StateStore | None = None,
    exchange: ExchangeClient | None = None,
    sentiment_source: SentimentSource | None = None,
    rng: random.Random | None = None,
) -> Runtime:
    store = store or build_store(config)
    exchange = exchange or build_exchange(config)
    sentiment_source = sentiment_source or FearGreedSource(
        config.fgi_url, timeout=config.http_timeout_seconds
    )
    balance_cache = BalanceCache(exchange.get_total_usd_value)
    sentiment = SentimentService(source=sentiment_source, exchange=exchange, store=store)
    risk_engine = RiskEngine(_resolve(config.risk_profiles_path))
    mode = config.execution_mode
    guard = LiveTradeGuard(store=store, settings=TradeGuardSettings.from_config(config))

    bot_a = BotAEngine(
        store=store,
        exchange=exchange,
        sentiment=sentiment,
        risk_engine=risk_engine,
        strategy=build_strategy(
            mode, AgentId.A, exchange=exchange, balance_cache=balance_cache, guard=guard, rng=rng
        ),
        settings=BotASettings.from_config(config),
    )
    bot_b = BotBEngine(
        store=store,
        exchange=exchange,
        sentiment=sentiment,
        risk_engine=risk_engine,
        strategy=build_strategy(
            mode, AgentId.B, exchange=exchange, balance_cache=balance_cache, guard=guard, rng=rng
        ),
        settings=BotBSettings.from_config(config),
        rng=rng,
    )
    runtime = Runtime(
        config=config,
        store=store,
        exchange=exchange,
        sentiment_source=sentiment_source,
        balance_cache=balance_cache,
        sentiment=sentiment,
        bot_a=bot_a,
        bot_b=bot_b,
        accountant=MonthlyDonationAccountant(store=store),
        snapshotter=BalanceSnapshotter(store=store, balance_cache=balance_cache),
        market=MarketMonitor(exchange=exchange),
        scheduler=TradingScheduler(),
    )
    register_jobs(runtime)
    return runtime


async def log_status(runtime: Runtime) -> dict[str, Any]:
    status = {
        "bot_a": await runtime.bot_a.get_status(),
        "bot_b": await runtime.bot_b.get_status(),
        "mcs": await runtime.sentiment.get_latest_mcs(),
        "prices": dict(runtime.market.latest_prices),
    }
    LOGGER.info("Status: %s", status)
    return status


async def daily_maintenance(runtime: Runtime) -> None:
    await runtime.sentiment.prune_readings()
    stats_a = await runtime.bot_a.get_statistics(days=1)
    stats_b = await runtime.bot_b.get_statistics(days=1)
    LOGGER.info("Daily statistics: A=%s B=%s", stats_a, stats_b)


def register_jobs(runtime: Runtime) -> None:
    config = runtime.config
    scheduler = runtime.scheduler
    snap = runtime.snapshotter

    scheduler.add_interval_job("bot-a", runtime.bot_a.tick, seconds=config.bot_a_interval_seconds)
    scheduler.add_interval_job("bot-b", runtime.bot_b.tick, seconds=config.bot_b_interval_seconds)
    scheduler.add_interval_job(
        "sentiment", runtime.sentiment.refresh, seconds=config.sentiment_interval_seconds
    )
    scheduler.add_interval_job("market", runtime.market.refresh, seconds=config.market_interval_seconds)
    scheduler.add_interval_job("status", lambda: log_status(runtime), seconds=3600)

    scheduler.add_cron_job("daily-snapshot", lambda: snap.take(SnapshotKind.DAILY), hour=0, minute=0)
    scheduler.add_cron_job(
        "weekly-snapshot", lambda: snap.take(SnapshotKind.WEEKLY), day_of_week="mon", hour=0, minute=0
    )
    scheduler.add_cron_job(
        "monthly-snapshot", lambda: snap.take(SnapshotKind.MONTHLY), day=1, hour=0, minute=0
    )
    scheduler.add_cron_job("maintenance", lambda: daily_maintenance(runtime), hour=0, minute=10)
    scheduler.add_cron_job("donation", runtime.accountant.run, day="last", hour=23, minute=55)


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------


async def _startup(runtime: Runtime) -> None:
    await runtime.store.connect()
    await runtime.snapshotter.ensure_startup_snapshots()
    try:
        await runtime.sentiment.refresh()
    except CharityBotError as exc:
        LOGGER.warning("Initial sentiment refresh failed: %s", exc)


async def run_worker(config: TradingEnvironmentConfig, once: str | None = None) -> None:
    runtime = build_runtime(config)
    LOGGER.info(
        "Starting charity bot (mode=%s store=%s exchange=%s)",
        config.execution_mode or "disabled",
        runtime.store.backend,
        runtime.exchange.name,
    )
    if config.emergency_stop:
        LOGGER.error("EMERGENCY_STOP is set: both agents are disabled")
    try:
        await _startup(runtime)
        if once is not None:
            job = "daily-snapshot" if once == "snapshot" else once
            result = await runtime.scheduler.run_now(job)
            LOGGER.info("%s finished: %s", once, result)
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:  # pragma: no cover - Windows
                pass

        runtime.scheduler.start()
        await stop.wait()
        LOGGER.info("Shutdown requested")
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Two-agent charity trading bot")
    parser.add_argument("--env-file", default=".env", help="dotenv file to load")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Overrides LOG_LEVEL",
    )
    parser.add_argument("--once", choices=ONCE_CHOICES, help="Run one job and exit")
    args = parser.parse_args(argv)

    setup_logging(level_name=args.log_level)

    try:
        config = load_trading_environment(args.env_file)
    except ConfigurationError as exc:
        LOGGER.error("Configuration error, refusing to start: %s", exc)
        return 2

    try:
        asyncio.run(run_worker(config, once=args.once))
    except ConfigurationError as exc:
        LOGGER.error("Configuration error, refusing to start: %s", exc)
        return 2
    except CharityBotError as exc:
        LOGGER.error("Startup failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        LOGGER.info("Worker stopped by user.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
