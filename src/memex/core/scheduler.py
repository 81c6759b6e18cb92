"""Background job scheduler - periodic and one-shot jobs with cancellable lifetime."""

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from memex.core.logging import get_logger

logger = get_logger("core.scheduler")


class JobPriority(Enum):
    LOW = 1
    NORMAL = 2
    HIGH = 3


@dataclass
class ScheduledJob:
    """A job scheduled for background execution."""

    id: str
    name: str
    callback: Callable[[], Awaitable[object] | object]
    interval: timedelta | None = None  # None = one-shot
    priority: JobPriority = JobPriority.NORMAL
    next_run: datetime = field(default_factory=datetime.now)
    last_run: datetime | None = None
    enabled: bool = True
    running: bool = False
    failures: int = 0


class Scheduler:
    """Runs jobs when due. A job never overlaps with its own previous run.

    ``clock`` and ``sleep`` are injectable so tests can drive time by hand
    and call ``run_pending()`` instead of starting the loop.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_seconds: float = 1.0,
    ):
        self.clock = clock
        self._sleep = sleep
        self._tick = tick_seconds
        self._jobs: dict[str, ScheduledJob] = {}
        self._inflight: set[asyncio.Task] = set()
        self._running = False
        self._loop_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def get(self, job_id: str) -> ScheduledJob | None:
        return self._jobs.get(job_id)

    def schedule(
        self,
        job_id: str,
        name: str,
        callback: Callable[[], Awaitable[object] | object],
        interval: timedelta | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        delay: timedelta | None = None,
    ) -> ScheduledJob:
        """Schedule a job; rescheduling an id replaces the old job."""
        next_run = self.clock()
        if delay:
            next_run += delay

        job = ScheduledJob(
            id=job_id,
            name=name,
            callback=callback,
            interval=interval,
            priority=priority,
            next_run=next_run,
        )
        self._jobs[job_id] = job
        logger.info(f"Scheduled job: {name} (interval: {interval})")
        return job

    def cancel(self, job_id: str) -> bool:
        """Remove a job. A run already in flight is not interrupted."""
        return self._jobs.pop(job_id, None) is not None

    def due(self) -> list[ScheduledJob]:
        now = self.clock()
        pending = [
            j for j in self._jobs.values()
            if j.enabled and not j.running and j.next_run <= now
        ]
        # Higher priority first
        pending.sort(key=lambda j: j.priority.value, reverse=True)
        return pending

    async def run_pending(self) -> list[str]:
        """Run every due job to completion, in priority order. Returns job ids run."""
        ran = []
        for job in self.due():
            await self._run(job)
            ran.append(job.id)
        return ran

    async def _run(self, job: ScheduledJob) -> None:
        job.running = True
        try:
            result = job.callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            job.failures += 1
            logger.error(f"Job {job.name} failed: {e}")
        finally:
            job.running = False
            job.last_run = self.clock()
            if job.interval:
                job.next_run = job.last_run + job.interval
            elif self._jobs.get(job.id) is job:
                # One-shot job, remove it
                del self._jobs[job.id]

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight jobs."""
        self._running = False
        tasks = [t for t in (self._loop_task, *self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._inflight.clear()
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        """Main scheduler loop - launches due jobs as separate tasks."""
        while self._running:
            for job in self.due():
                # Mark before the task starts so the next tick skips it
                job.running = True
                task = asyncio.create_task(self._run(job))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            await self._sleep(self._tick)
