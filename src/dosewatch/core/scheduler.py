"""Periodic driver for trigger evaluation and maintenance jobs.

:class:`TickDriver` owns one background asyncio task.  Every
``interval_seconds`` (aligned to wall-clock boundaries so that minute-level
schedule slots are never skipped) it starts a tick and then any cron jobs
that have come due.  Cron expressions are evaluated in the configured local
time zone with croniter.

Overlapping ticks: with ``allow_overlap=False`` (default) a tick that starts
while the previous one is still running is skipped.  With ``allow_overlap=True``
ticks may run concurrently and correctness rests on the deduplicator and the
dead-letter upsert.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from dosewatch.config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

AsyncFn = Callable[[], Awaitable[Any]]


def next_run(cron: str, *, now: datetime | None = None, tz: ZoneInfo | None = None) -> datetime:
    """Next occurrence of *cron* after *now*, evaluated in *tz*, returned in UTC."""
    anchor = (now or datetime.now(UTC)).astimezone(tz or ZoneInfo(DEFAULT_TIMEZONE))
    return croniter(cron, anchor).get_next(datetime).astimezone(UTC)


@dataclass
class CronJob:
    name: str
    cron: str
    fn: AsyncFn
    next_run_at: datetime | None = None


class TickDriver:
    """Fixed-interval tick loop with cron-scheduled side jobs.

    Parameters
    ----------
    tick_fn:
        Coroutine function run on every tick (the trigger evaluation pass).
    interval_seconds:
        Tick period.
    allow_overlap:
        Whether a new tick may start while the previous one is still running.
    timezone:
        Zone in which cron expressions are interpreted.
    """

    def __init__(
        self,
        tick_fn: AsyncFn,
        *,
        interval_seconds: float = 60.0,
        allow_overlap: bool = False,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self._tick_fn = tick_fn
        self._interval = interval_seconds
        self._allow_overlap = allow_overlap
        self._tz = ZoneInfo(timezone)
        self._guard = asyncio.Lock()
        self._jobs: list[CronJob] = []
        self._task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self.ticks_started = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_job(self, name: str, cron: str, fn: AsyncFn) -> CronJob:
        job = CronJob(name=name, cron=cron, fn=fn)
        self._jobs.append(job)
        return job

    # -- tick ---------------------------------------------------------------

    async def run_tick(self) -> bool:
        """Run one tick now.  Returns False when skipped by the overlap guard."""
        if not self._allow_overlap and self._guard.locked():
            self.ticks_skipped += 1
            logger.warning("Previous tick still running, skipping this tick")
            return False

        self.ticks_started += 1
        if self._allow_overlap:
            await self._tick_fn()
            return True
        async with self._guard:
            await self._tick_fn()
        return True

    async def _safe_run(self, name: str, fn: AsyncFn) -> None:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled run failed", extra={"job": name})

    def _spawn(self, name: str, fn: AsyncFn) -> None:
        task = asyncio.create_task(self._safe_run(name, fn), name=f"dosewatch-{name}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    # -- cron jobs ----------------------------------------------------------

    def run_due_jobs(self, now: datetime | None = None) -> list[str]:
        """Start every job whose next run is at or before *now*; return their names."""
        now = now or datetime.now(UTC)
        started: list[str] = []
        for job in self._jobs:
            if job.next_run_at is None:
                job.next_run_at = next_run(job.cron, now=now, tz=self._tz)
                continue
            if now >= job.next_run_at:
                self._spawn(job.name, job.fn)
                started.append(job.name)
                job.next_run_at = next_run(job.cron, now=now, tz=self._tz)
        return started

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        now = datetime.now(UTC)
        for job in self._jobs:
            job.next_run_at = next_run(job.cron, now=now, tz=self._tz)
        self._task = asyncio.create_task(self._loop(), name="dosewatch-tick-driver")
        logger.info(
            "Tick driver started",
            extra={
                "interval_seconds": self._interval,
                "allow_overlap": self._allow_overlap,
                "jobs": [j.name for j in self._jobs],
            },
        )

    async def stop(self) -> None:
        """Cancel the loop and any tick or job still running."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        pending = list(self._in_flight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Tick driver stopped")

    def _seconds_until_next_boundary(self) -> float:
        return self._interval - (time.time() % self._interval)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._seconds_until_next_boundary())
            self._spawn("tick", self.run_tick)
            self.run_due_jobs()
