"""workers/scheduler.py — one APScheduler instance driving every periodic job.

Each job has its own trigger and no lock is shared between jobs.  APScheduler
refuses to start a second instance of a job that is still running
(``max_instances=1``) and the engines keep their own in-flight guard on top.
Every job is wrapped so that an exception is logged and never leaves the job.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.errors import CharityBotError

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class TradingScheduler:
    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._jobs: dict[str, JobFunc] = {}
        self.failures: dict[str, int] = {}

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def add_interval_job(self, name: str, func: JobFunc, *, seconds: int) -> None:
        self._register(name, func, "interval", seconds=seconds)

    def add_cron_job(self, name: str, func: JobFunc, **cron: Any) -> None:
        self._register(name, func, "cron", **cron)

    def _register(self, name: str, func: JobFunc, trigger: str, **trigger_args: Any) -> None:
        self._jobs[name] = func
        self._scheduler.add_job(
            self._isolated(name, func),
            trigger,
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **trigger_args,
        )
        logger.debug("Registered job %s (%s %s)", name, trigger, trigger_args)

    def _isolated(self, name: str, func: JobFunc) -> Callable[[], Awaitable[None]]:
        async def _run() -> None:
            try:
                await func()
            except CharityBotError as exc:
                self.failures[name] = self.failures.get(name, 0) + 1
                logger.warning("Job %s failed: %s", name, exc)
            except Exception:
                self.failures[name] = self.failures.get(name, 0) + 1
                logger.exception("Job %s crashed", name)

        return _run

    async def run_now(self, name: str) -> Any:
        """Run a registered job immediately, outside the scheduler."""
        try:
            func = self._jobs[name]
        except KeyError:
            raise ValueError(f"Unknown job {name!r}; known jobs: {', '.join(self._jobs)}") from None
        return await func()

    def start(self) -> None:
        self._scheduler.start()
        logger.info("Scheduler started with jobs: %s", ", ".join(self._jobs))

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
