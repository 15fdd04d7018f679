from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors import ExchangeError
from workers.scheduler import TradingScheduler


@pytest.fixture
def apscheduler() -> MagicMock:
    scheduler = MagicMock()
    scheduler.running = False
    return scheduler


def _wrapped(apscheduler: MagicMock, index: int = -1):
    return apscheduler.add_job.call_args_list[index].args[0]


def test_jobs_never_overlap_themselves(apscheduler: MagicMock) -> None:
    scheduler = TradingScheduler(apscheduler)
    scheduler.add_interval_job("bot-a", AsyncMock(), seconds=300)
    scheduler.add_cron_job("donation", AsyncMock(), day="last", hour=23, minute=55)

    interval, cron = apscheduler.add_job.call_args_list
    assert interval.args[1] == "interval"
    assert interval.kwargs["seconds"] == 300
    assert cron.args[1] == "cron"
    assert cron.kwargs["day"] == "last"
    for call in (interval, cron):
        assert call.kwargs["max_instances"] == 1
        assert call.kwargs["coalesce"] is True
        assert call.kwargs["replace_existing"] is True
    assert scheduler.job_names == ["bot-a", "donation"]


@pytest.mark.asyncio
async def test_failing_job_is_contained(apscheduler: MagicMock) -> None:
    scheduler = TradingScheduler(apscheduler)
    scheduler.add_interval_job("market", AsyncMock(side_effect=ExchangeError("down")), seconds=120)
    scheduler.add_interval_job("status", AsyncMock(side_effect=RuntimeError("bug")), seconds=3600)
    healthy = AsyncMock()
    scheduler.add_interval_job("sentiment", healthy, seconds=3600)

    await _wrapped(apscheduler, 0)()
    await _wrapped(apscheduler, 1)()
    await _wrapped(apscheduler, 2)()

    assert scheduler.failures == {"market": 1, "status": 1}
    healthy.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_now(apscheduler: MagicMock) -> None:
    scheduler = TradingScheduler(apscheduler)
    scheduler.add_interval_job("bot-b", AsyncMock(return_value="done"), seconds=900)

    assert await scheduler.run_now("bot-b") == "done"
    with pytest.raises(ValueError, match="Unknown job"):
        await scheduler.run_now("nope")


def test_shutdown_only_when_running(apscheduler: MagicMock) -> None:
    scheduler = TradingScheduler(apscheduler)
    scheduler.shutdown()
    apscheduler.shutdown.assert_not_called()

    apscheduler.running = True
    scheduler.shutdown()
    apscheduler.shutdown.assert_called_once_with(wait=False)
