"""
Background refresh of the dashboard data types.

The scheduler is a job table plus a ``tick`` function: each tick admits the
highest-priority due jobs, up to ``max_concurrent``, and runs them. The active
view context boosts the jobs that view depends on. A failing job is retried
sooner than its interval, never sooner than ``min_failure_backoff``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 900.0
DEFAULT_PRIORITY = 1
FIRST_TICK_DELAY = 1.0

DEFAULT_INTERVALS = {
    "pendingReview": 600.0,
    "mrsWithJira": 600.0,
    "tooOld": 900.0,
    "notUpdated": 900.0,
    "jiraWithMRs": 900.0,
    "jiraTickets": 1800.0,
}

BASE_PRIORITIES = {
    "pendingReview": 5,
    "notUpdated": 4,
    "mrsWithJira": 3,
    "tooOld": 2,
    "jiraWithMRs": 2,
    "jiraTickets": 1,
}

CONTEXT_BOOSTS = {
    "po": {"jiraWithMRs": 10, "jiraTickets": 8},
    "dev": {"mrsWithJira": 10, "pendingReview": 8},
    "team": {"jiraWithMRs": 10},
    "hygiene": {"tooOld": 10, "notUpdated": 9, "pendingReview": 8},
}
FALLBACK_CONTEXT = "hygiene"

JobRunner = Callable[[str], Awaitable[Any]]


@dataclass
class SyncJob:
    data_type: str
    interval: float
    priority: int
    base_priority: int
    last_run: float | None = None
    next_run: float = 0.0
    is_running: bool = False
    failure_count: int = 0
    last_error: str | None = None

    def is_due(self, now: float) -> bool:
        return not self.is_running and self.next_run <= now

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "dataType": data["data_type"],
            "interval": data["interval"],
            "priority": data["priority"],
            "basePriority": data["base_priority"],
            "lastRun": data["last_run"],
            "nextRun": data["next_run"],
            "isRunning": data["is_running"],
            "failureCount": data["failure_count"],
            "lastError": data["last_error"],
        }


class SyncScheduler:
    def __init__(
        self,
        runner: JobRunner,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tick_seconds: float = 30.0,
        max_concurrent: int = 2,
        min_failure_backoff: float = 60.0,
        intervals: dict[str, float] | None = None,
        priorities: dict[str, int] | None = None,
    ):
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be positive")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if min_failure_backoff < 0:
            raise ValueError("min_failure_backoff must be non-negative")

        self._runner = runner
        self._clock = clock
        self._sleep = sleep
        self._tick_seconds = tick_seconds
        self._max_concurrent = max_concurrent
        self._min_failure_backoff = min_failure_backoff
        self._active_context: str | None = None
        self._task: asyncio.Task | None = None
        self._tick_count = 0
        self._last_tick: float | None = None

        merged_intervals = {**DEFAULT_INTERVALS, **(intervals or {})}
        merged_priorities = {**BASE_PRIORITIES, **(priorities or {})}
        now = clock()
        self._jobs: dict[str, SyncJob] = {}
        for data_type in sorted(set(merged_intervals) | set(merged_priorities)):
            interval = float(merged_intervals.get(data_type, DEFAULT_INTERVAL))
            if interval <= 0:
                raise ValueError(f"interval for '{data_type}' must be positive")
            priority = merged_priorities.get(data_type, DEFAULT_PRIORITY)
            self._jobs[data_type] = SyncJob(
                data_type=data_type,
                interval=interval,
                priority=priority,
                base_priority=priority,
                next_run=now + interval,
            )
            logger.debug("Added sync job %s (interval=%ss, priority=%d)", data_type, interval, priority)

    @property
    def active_context(self) -> str | None:
        return self._active_context

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _job(self, data_type: str) -> SyncJob:
        try:
            return self._jobs[data_type]
        except KeyError:
            raise KeyError(f"unknown data type '{data_type}'") from None

    def jobs(self) -> list[SyncJob]:
        return list(self._jobs.values())

    def set_active_context(self, context: str | None) -> None:
        """Reset every job to its baseline, then apply the context's boosts.

        ``None`` leaves the baseline; an unknown context gets the hygiene boosts.
        """
        for job in self._jobs.values():
            job.priority = job.base_priority
        self._active_context = context
        if context is None:
            logger.info("Sync priorities reset to baseline")
            return
        boosts = CONTEXT_BOOSTS.get(context, CONTEXT_BOOSTS[FALLBACK_CONTEXT])
        for data_type, priority in boosts.items():
            if data_type in self._jobs:
                self._jobs[data_type].priority = priority
        logger.info("Sync priorities boosted for context %s", context)

    def set_refresh_interval(self, data_type: str, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("interval must be positive")
        job = self._job(data_type)
        job.interval = float(seconds)
        logger.info("Sync interval for %s set to %ss", data_type, seconds)

    def due_jobs(self, now: float | None = None) -> list[SyncJob]:
        """Due, idle jobs, highest priority first; ties by data type name."""
        now = self._clock() if now is None else now
        due = [job for job in self._jobs.values() if job.is_due(now)]
        return sorted(due, key=lambda job: (-job.priority, job.data_type))

    async def _run_job(self, job: SyncJob) -> None:
        job.is_running = True
        try:
            await self._runner(job.data_type)
        except Exception as exc:
            # Backoff counts from completion, not from the start of the run.
            finished = self._clock()
            job.failure_count += 1
            job.last_error = f"{exc.__class__.__name__}: {exc}"
            job.next_run = finished + max(self._min_failure_backoff, job.interval / 3)
            logger.warning(
                "Sync job %s failed (%d in a row), next attempt at %.0f: %s",
                job.data_type,
                job.failure_count,
                job.next_run,
                exc,
            )
        else:
            finished = self._clock()
            job.last_run = finished
            job.next_run = finished + job.interval
            job.failure_count = 0
            job.last_error = None
            logger.info("Sync job %s completed", job.data_type)
        finally:
            job.is_running = False

    async def tick(self) -> list[str]:
        """Run up to ``max_concurrent`` due jobs and wait for them."""
        self._tick_count += 1
        self._last_tick = self._clock()
        admitted = self.due_jobs(self._last_tick)[: self._max_concurrent]
        if not admitted:
            return []
        for job in admitted:
            job.is_running = True
        await asyncio.gather(*(self._run_job(job) for job in admitted))
        return [job.data_type for job in admitted]

    async def refresh_now(self, data_type: str) -> bool:
        """Run one job out of band. False if it is already running."""
        job = self._job(data_type)
        if job.is_running:
            logger.info("Sync job %s already running, skipping manual refresh", data_type)
            return False
        await self._run_job(job)
        return True

    async def _loop(self) -> None:
        await self._sleep(FIRST_TICK_DELAY)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Sync tick failed")
            await self._sleep(self._tick_seconds)

    def start(self) -> None:
        """Start the tick loop on the running event loop."""
        if self.running:
            logger.warning("Sync scheduler already started")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Sync scheduler started (tick=%ss)", self._tick_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Sync scheduler stopped")

    def get_health(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "activeContext": self._active_context,
            "tickCount": self._tick_count,
            "lastTick": self._last_tick,
            "tickSeconds": self._tick_seconds,
            "maxConcurrent": self._max_concurrent,
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }
