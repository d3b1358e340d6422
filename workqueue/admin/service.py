"""
Administrative control surface.

Operator actions on queues and jobs: inspection, retry, removal, pause and
resume, cleanup, and health. The HTTP routes are a thin layer over this
service; it can equally be used in-process.
"""

import logging
from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from datetime import timedelta

from workqueue.clock import Clock
from workqueue.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    TERMINAL_STATES,
    EventType,
    JobState,
)
from workqueue.errors import (
    InvalidJobOptionsError,
    JobNotFoundError,
    QueueNotFoundError,
    RepeatableNotFoundError,
)
from workqueue.observability.events import EventEmitter
from workqueue.observability.health import (
    HealthIssue,
    HealthReport,
    HealthThresholds,
    evaluate_health,
)
from workqueue.observability.metrics import MetricsCollector, get_metrics
from workqueue.store.base import JobStore
from workqueue.types.events import JobEvent
from workqueue.types.job import Job, QueueConfig, QueueStats, RepeatableJob

logger = logging.getLogger(__name__)

ISSUE_STORE_UNAVAILABLE = "store_unavailable"


class AdminService:
    """
    Operator actions over a job store.

    Args:
        store: The job store.
        emitter: Lifecycle event emitter.
        thresholds: Default health thresholds.
        threshold_overrides: Per-queue health thresholds.
        handler_names: Returns the queues that have a handler in this
            process. Together with the consumer heartbeats persisted by
            dispatchers it is used to report queues nobody consumes.
        cancel_local: Signals cooperative cancellation to a job running in
            this process. Returns True if the job was found.
        wake_queue: Wakes the local dispatcher of a queue.
        clock: Time source; defaults to the store's clock.
        clean_default_grace_ms: Default age for ``clean_queue``.
    """

    def __init__(
        self,
        store: JobStore,
        emitter: EventEmitter,
        thresholds: HealthThresholds | None = None,
        threshold_overrides: Mapping[str, HealthThresholds] | None = None,
        handler_names: Callable[[], Collection[str]] | None = None,
        cancel_local: Callable[[str], bool] | None = None,
        wake_queue: Callable[[str], None] | None = None,
        clock: Clock | None = None,
        clean_default_grace_ms: int = 24 * 60 * 60 * 1000,
        metrics: MetricsCollector | None = None,
    ):
        self.store = store
        self.emitter = emitter
        self.thresholds = thresholds or HealthThresholds()
        self.threshold_overrides = dict(threshold_overrides or {})
        self.clock = clock or store.clock
        self.clean_default_grace_ms = clean_default_grace_ms
        self._handler_names = handler_names
        self._cancel_local = cancel_local
        self._wake_queue = wake_queue
        self._metrics = metrics or get_metrics()

    def _wake(self, queue_name: str) -> None:
        if self._wake_queue is not None:
            self._wake_queue(queue_name)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_stats(self, queue_name: str | None = None) -> list[QueueStats]:
        """
        Get job counts per state.

        Args:
            queue_name: Restrict to one queue.

        Returns:
            One QueueStats per queue.

        Raises:
            QueueNotFoundError: If ``queue_name`` is unknown.
        """
        if queue_name is not None and await self.store.get_queue(queue_name) is None:
            raise QueueNotFoundError(queue_name)
        stats = await self.store.count_by_state(queue_name)
        for entry in stats:
            self._metrics.update_queue_depth(entry)
        return stats

    async def list_jobs(
        self,
        queue_name: str,
        state: JobState | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs of a queue, newest first.

        Returns:
            Tuple of (jobs, total matching).
        """
        if page < 1:
            raise InvalidJobOptionsError("page must be at least 1")
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        return await self.store.list_by_state(queue_name, state, page, page_size)

    async def get_job(self, job_id: str, queue_name: str | None = None) -> Job:
        """
        Get a job by id.

        Args:
            job_id: The job id.
            queue_name: When given, the job must belong to this queue.

        Raises:
            JobNotFoundError: If no such job exists (in that queue).
        """
        job = await self.store.get_by_id(job_id)
        if job is None or (queue_name is not None and job.queue_name != queue_name):
            raise JobNotFoundError(job_id)
        return job

    # ------------------------------------------------------------------
    # Job actions
    # ------------------------------------------------------------------

    async def retry_job(self, job_id: str, queue_name: str | None = None) -> tuple[Job, bool]:
        """
        Move a failed job back to ``waiting`` with a fresh attempt budget.

        Jobs in any other state are left untouched.

        Returns:
            Tuple of (job, applied).
        """
        job = await self.get_job(job_id, queue_name)
        if job.state != JobState.FAILED:
            return job, False

        retried = await self.store.retry_failed(job_id)
        if retried is None:
            return await self.get_job(job_id, queue_name), False

        logger.info(
            "Job retried by operator",
            extra={"job_id": job_id, "queue": retried.queue_name},
        )
        await self.emitter.emit(JobEvent.for_job(EventType.RETRIED, retried))
        self._wake(retried.queue_name)
        return retried, True

    async def retry_all_failed(self, queue_name: str, limit: int = 1000) -> int:
        """
        Retry up to ``limit`` failed jobs of a queue.

        Returns:
            Number of jobs moved back to ``waiting``.
        """
        if limit < 1:
            raise InvalidJobOptionsError("limit must be at least 1")
        count = await self.store.retry_all_failed(queue_name, limit)
        if count:
            logger.info(
                f"Retried {count} failed jobs",
                extra={"queue": queue_name, "limit": limit},
            )
            self._wake(queue_name)
        return count

    async def remove_job(self, job_id: str, queue_name: str | None = None) -> Job:
        """
        Delete a job in any state.

        Removing an active job is best-effort: a handler running in this
        process is signalled to stop, one running elsewhere finishes and its
        report is discarded.

        Returns:
            The job as it was before removal.
        """
        job = await self.get_job(job_id, queue_name)
        if job.state == JobState.ACTIVE and self._cancel_local is not None:
            self._cancel_local(job_id)

        if not await self.store.remove(job_id):
            raise JobNotFoundError(job_id)

        logger.info(
            "Job removed",
            extra={"job_id": job_id, "queue": job.queue_name, "state": job.state.value},
        )
        await self.emitter.emit(JobEvent.for_job(EventType.REMOVED, job))
        return job

    # ------------------------------------------------------------------
    # Queue actions
    # ------------------------------------------------------------------

    async def pause_queue(self, queue_name: str) -> QueueConfig:
        """
        Stop new claims on a queue. Active jobs run to completion.

        Raises:
            QueueNotFoundError: If the queue is unknown.
        """
        config = await self.store.set_paused(queue_name, True)
        if config is None:
            raise QueueNotFoundError(queue_name)
        logger.info("Queue paused", extra={"queue": queue_name})
        await self.emitter.emit(JobEvent.queue_event(EventType.PAUSED, queue_name))
        return config

    async def resume_queue(self, queue_name: str) -> QueueConfig:
        """Allow claims on a paused queue again."""
        config = await self.store.set_paused(queue_name, False)
        if config is None:
            raise QueueNotFoundError(queue_name)
        logger.info("Queue resumed", extra={"queue": queue_name})
        await self.emitter.emit(JobEvent.queue_event(EventType.RESUMED, queue_name))
        self._wake(queue_name)
        return config

    async def clean_queue(
        self,
        queue_name: str,
        older_than_ms: int | None = None,
        states: Iterable[JobState | str] | None = None,
    ) -> int:
        """
        Delete terminal jobs that finished more than ``older_than_ms`` ago.

        Args:
            queue_name: The queue to clean.
            older_than_ms: Minimum age; defaults to the configured grace.
            states: Terminal states to clean; defaults to ``completed``.

        Returns:
            Number of jobs removed.

        Raises:
            InvalidJobOptionsError: For a negative age or non-terminal states.
        """
        grace = self.clean_default_grace_ms if older_than_ms is None else older_than_ms
        if grace < 0:
            raise InvalidJobOptionsError("grace must be non-negative")

        try:
            targets = [JobState(s) for s in (states or (JobState.COMPLETED,))]
        except ValueError as e:
            raise InvalidJobOptionsError(str(e)) from e
        invalid = [s.value for s in targets if s not in TERMINAL_STATES]
        if invalid:
            raise InvalidJobOptionsError(f"Only terminal states can be cleaned, got {invalid}")

        cutoff = self.clock() - timedelta(milliseconds=grace)
        removed = await self.store.clean(queue_name, cutoff, targets)
        logger.info(
            f"Cleaned {removed} jobs",
            extra={
                "queue": queue_name,
                "states": [s.value for s in targets],
                "grace_ms": grace,
            },
        )
        return removed

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    async def list_repeatables(self, queue_name: str | None = None) -> list[RepeatableJob]:
        """List repeatable job definitions, next run first."""
        return await self.store.list_repeatables(queue_name)

    async def remove_repeatable(self, queue_name: str, name: str) -> None:
        """
        Stop a repeatable job. Runs already enqueued are not affected.

        Raises:
            RepeatableNotFoundError: If no such repeatable job exists.
        """
        if not await self.store.remove_repeatable(queue_name, name):
            raise RepeatableNotFoundError(queue_name, name)
        logger.info("Repeatable job removed", extra={"queue": queue_name, "repeatable": name})

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthReport:
        """
        Evaluate queue health against thresholds. Never raises.

        A store that cannot be read, for whatever reason, is reported as an
        issue rather than an error.
        """
        try:
            stats = await self.store.count_by_state()
        except Exception as e:
            logger.warning(
                f"Health check could not read stats: {e}",
                extra={"error_type": type(e).__name__},
            )
            return HealthReport(
                healthy=False,
                issues=[
                    HealthIssue(
                        queue="*",
                        kind=ISSUE_STORE_UNAVAILABLE,
                        value=0,
                        threshold=None,
                        message=str(e) or type(e).__name__,
                    )
                ],
            )

        for entry in stats:
            self._metrics.update_queue_depth(entry)

        handlers = self._handler_names() if self._handler_names is not None else None
        return evaluate_health(
            stats,
            self.thresholds,
            handlers=handlers,
            overrides=self.threshold_overrides,
            now=self.clock(),
        )
