"""
Delayed-job scheduler and stale-job sweeper.

The scheduler runs periodically to:
1. Promote ``delayed`` jobs whose ``delay_until`` has passed to ``waiting``
2. Recover ``active`` jobs whose dispatcher stopped heartbeating, counting
   the lost run as a failed attempt so the attempt bound still holds
3. Enqueue runs of repeatable jobs that came due
4. Remove finished jobs past their queue's retention

It sleeps until the earliest of the next known ``delay_until``, the next
repeatable run and the configured interval, and is woken early when a job
with an earlier due time is scheduled.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from workqueue.clock import Clock
from workqueue.constants import STALLED_ERROR, EventType, JobState
from workqueue.errors import PersistenceError
from workqueue.observability.events import EventEmitter
from workqueue.observability.metrics import MetricsCollector, get_metrics
from workqueue.store.base import JobStore
from workqueue.types.events import JobEvent
from workqueue.types.job import Job, Retention

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one scheduler cycle."""

    promoted: int = 0
    recovered: int = 0
    repeated: int = 0
    pruned: int = 0


class Scheduler:
    """
    Promotes due delayed jobs, recovers stale active jobs, enqueues
    repeatable runs and applies retention.
    """

    def __init__(
        self,
        store: JobStore,
        emitter: EventEmitter,
        interval_seconds: float = 5.0,
        stale_job_timeout_seconds: float = 60.0,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
        on_promoted: Callable[[], None] | None = None,
        default_retention: Retention | None = None,
        retention_interval_seconds: float = 60.0,
    ):
        """
        Initialize the scheduler.

        Args:
            store: The job store.
            emitter: Lifecycle event emitter.
            interval_seconds: Upper bound on the sleep between cycles.
            stale_job_timeout_seconds: Heartbeat age after which an active
                job is considered abandoned.
            clock: Time source; defaults to the store's clock.
            metrics: Metrics collector.
            on_promoted: Called after a cycle that made jobs claimable.
            default_retention: Retention for queues without their own.
                None keeps finished jobs of such queues forever.
            retention_interval_seconds: Minimum time between retention passes.
        """
        self.store = store
        self.emitter = emitter
        self.interval = interval_seconds
        self.stale_job_timeout = timedelta(seconds=stale_job_timeout_seconds)
        self.clock = clock or store.clock
        self._metrics = metrics or get_metrics()
        self._on_promoted = on_promoted
        self.default_retention = default_retention
        self.retention_interval = timedelta(seconds=retention_interval_seconds)

        self._running = False
        self._wake = asyncio.Event()
        self._next_due: datetime | None = None
        self._last_retention: datetime | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the scheduler loop in the background."""
        if self._running:
            return
        logger.info(f"Scheduler starting with interval {self.interval}s")
        self._running = True
        self._task = asyncio.create_task(self._run(), name="scheduler")

    async def stop(self) -> None:
        """Stop the scheduler."""
        logger.info("Scheduler stopping")
        self._running = False
        self._wake.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Scheduler stopped")

    def notify(self, due: datetime | None = None) -> None:
        """
        Wake the scheduler if ``due`` is earlier than its next planned wake-up.

        Args:
            due: The ``delay_until`` of a newly scheduled job. None forces a
                wake-up.
        """
        if due is None or self._next_due is None or due < self._next_due:
            self._next_due = due
            self._wake.set()

    async def _run(self) -> None:
        while self._running:
            self._wake.clear()
            try:
                result = await self.run_once()
                if result != SweepResult():
                    logger.info(
                        "Scheduler cycle",
                        extra={
                            "promoted": result.promoted,
                            "recovered": result.recovered,
                            "repeated": result.repeated,
                            "pruned": result.pruned,
                        },
                    )
            except PersistenceError as e:
                logger.warning(f"Job store unavailable: {e}")
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            if not self._running:
                break
            try:
                timeout = await self._seconds_until_next()
            except Exception as e:
                logger.warning(f"Could not read next due time: {e}")
                timeout = self.interval
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler loop exited")

    async def _seconds_until_next(self) -> float:
        due = [
            moment
            for moment in (await self.store.next_delayed_at(), await self.store.next_repeat_at())
            if moment is not None
        ]
        self._next_due = min(due) if due else None
        if self._next_due is None:
            return self.interval
        remaining = (self._next_due - self.clock()).total_seconds()
        return max(0.0, min(self.interval, remaining))

    async def run_once(self) -> SweepResult:
        """
        Run one scheduler cycle (for testing or cron-style execution).

        Retention runs at most once per retention interval.

        Returns:
            Counts of promoted, recovered, repeated and pruned jobs.
        """
        promoted = await self.store.promote_due()
        recovered = await self.recover_stale()
        repeated = await self.enqueue_repeatables()
        claimable = (
            promoted
            or repeated
            or any(job.state == JobState.WAITING for job in recovered)
        )
        if claimable and self._on_promoted is not None:
            self._on_promoted()

        pruned = 0
        now = self.clock()
        if self._last_retention is None or now - self._last_retention >= self.retention_interval:
            self._last_retention = now
            pruned = await self.apply_retention()

        return SweepResult(
            promoted=promoted,
            recovered=len(recovered),
            repeated=len(repeated),
            pruned=pruned,
        )

    async def recover_stale(self) -> list[Job]:
        """
        Fail the current attempt of active jobs without a recent heartbeat.

        Returns:
            The recovered jobs in their new state.
        """
        stale_before = self.clock() - self.stale_job_timeout
        recovered = await self.store.recover_stale(stale_before)

        for job in recovered:
            logger.warning(
                "Recovered stale job",
                extra={
                    "job_id": job.id,
                    "queue": job.queue_name,
                    "attempt": job.attempts,
                    "state": job.state.value,
                },
            )
            self._metrics.record_stale_recovered(job.queue_name)
            await self.emitter.emit(
                JobEvent.for_job(EventType.STALLED, job, error=STALLED_ERROR)
            )
            if job.state == JobState.FAILED:
                await self.emitter.emit(JobEvent.failed(job))
            else:
                await self.emitter.emit(JobEvent.retry_scheduled(job))

        return recovered

    async def enqueue_repeatables(self) -> list[Job]:
        """Enqueue one job for every repeatable job that came due."""
        jobs = await self.store.enqueue_due_repeatables()
        for job in jobs:
            logger.info(
                "Repeatable job enqueued",
                extra={"job_id": job.id, "queue": job.queue_name},
            )
            self._metrics.record_enqueued(job.queue_name)
            await self.emitter.emit(JobEvent.enqueued(job))
        return jobs

    async def apply_retention(self) -> int:
        """
        Remove finished jobs past retention, queue by queue.

        A queue's own retention replaces the default entirely.

        Returns:
            Number of jobs removed.
        """
        now = self.clock()
        removed = 0
        for config in await self.store.list_queues():
            retention = config.retention or self.default_retention
            if retention is None:
                continue

            pruned = {JobState.COMPLETED: 0, JobState.FAILED: 0}
            if retention.completed_age_ms is not None:
                pruned[JobState.COMPLETED] += await self.store.clean(
                    config.name,
                    now - timedelta(milliseconds=retention.completed_age_ms),
                    [JobState.COMPLETED],
                )
            if retention.completed_count is not None:
                pruned[JobState.COMPLETED] += await self.store.trim(
                    config.name, JobState.COMPLETED, retention.completed_count
                )
            if retention.failed_age_ms is not None:
                pruned[JobState.FAILED] += await self.store.clean(
                    config.name,
                    now - timedelta(milliseconds=retention.failed_age_ms),
                    [JobState.FAILED],
                )

            for state, count in pruned.items():
                if count:
                    self._metrics.record_pruned(config.name, state.value, count)
                    removed += count
        if removed:
            logger.info(f"Retention removed {removed} finished jobs")
        return removed
