"""signalcheck — periodic refresh scheduler.

Runs named async jobs at fixed intervals from one polling loop.  Jobs run
sequentially; a failing job is logged and retried at its next slot.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("signalcheck.scheduler")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A named refresh job."""
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[Any]]
    next_run: Optional[datetime] = None  # None = run at the first tick
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None

    def is_due(self, now: datetime) -> bool:
        return self.next_run is None or now >= self.next_run


class RefreshScheduler:
    """Explicit ticker with start/stop.

    Args:
        clock: Returns the current aware UTC time; injectable for tests.
        sleep: Awaitable sleep between ticks; injectable for tests.
        tick_seconds: Pause between ticks.  ``stop()`` takes effect at the
            next tick boundary.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_seconds: float = 1.0,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._tick_seconds = tick_seconds
        self._jobs: dict[str, Job] = {}
        self._running: bool = False
        self._task: Optional[asyncio.Task] = None

    @property
    def jobs(self) -> dict[str, Job]:
        return dict(self._jobs)

    @property
    def running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> Job:
        """Register *func* to run every *interval_seconds*."""
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        if name in self._jobs:
            raise ValueError(f"Job '{name}' already registered")
        job = Job(name=name, interval_seconds=interval_seconds, func=func)
        self._jobs[name] = job
        return job

    async def tick(self) -> list[str]:
        """Run every due job once.  Returns the names of jobs that ran."""
        ran: list[str] = []
        for job in list(self._jobs.values()):
            now = self._clock()
            if not job.is_due(now):
                continue
            job.next_run = now + timedelta(seconds=job.interval_seconds)
            job.runs += 1
            ran.append(job.name)
            try:
                await job.func()
                job.last_error = None
            except Exception as exc:
                job.failures += 1
                job.last_error = str(exc)
                logger.error("Scheduled job '%s' failed: %s", job.name, exc)
        return ran

    async def run(self, max_ticks: int = 0) -> int:
        """Tick until stopped.

        Args:
            max_ticks: Stop after this many ticks (0 = unlimited).

        Returns:
            Number of ticks performed.
        """
        self._running = True
        ticks = 0
        logger.info("Scheduler started with jobs: %s", ", ".join(self._jobs) or "none")
        try:
            while self._running:
                await self.tick()
                ticks += 1
                if max_ticks > 0 and ticks >= max_ticks:
                    break
                await self._sleep(self._tick_seconds)
        finally:
            self._running = False
            logger.info("Scheduler stopped after %d ticks", ticks)
        return ticks

    def start(self) -> asyncio.Task:
        """Run the loop as a background task on the current event loop."""
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.ensure_future(self.run())
        return self._task

    def stop(self) -> None:
        """Signal the loop to stop after the current tick."""
        self._running = False
