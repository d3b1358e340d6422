"""
Job store contract.

A job store is the single source of truth for job state. Every state
transition goes through it, and ``claim_next`` is the only synchronization
point between dispatchers: an implementation must guarantee that a waiting
job is handed to exactly one claimer.
"""

import abc
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from workqueue.clock import Clock, utcnow
from workqueue.constants import DEFAULT_PRIORITY, JobState
from workqueue.errors import InvalidJobOptionsError
from workqueue.retry import RetryPolicy
from workqueue.types.job import Job, JobOptions, QueueConfig, QueueStats, RepeatableJob


def initial_schedule(
    options: JobOptions,
    now: datetime,
) -> tuple[JobState, datetime | None]:
    """
    Resolve the initial state and visibility time of a new job.

    Returns:
        Tuple of (state, delay_until). ``delay_until`` is None for jobs that
        are claimable immediately.
    """
    due: datetime | None = None
    if options.delay:
        try:
            due = now + timedelta(milliseconds=options.delay)
        except OverflowError as e:
            raise InvalidJobOptionsError(f"delay out of range: {options.delay}") from e
    if options.run_at is not None and (due is None or options.run_at > due):
        due = options.run_at
    if due is None or due <= now:
        return JobState.WAITING, None
    return JobState.DELAYED, due


def job_defaults(
    options: JobOptions,
    queue: QueueConfig | None,
    policy: RetryPolicy,
) -> tuple[int, int]:
    """
    Resolve priority and attempt budget: job options, then queue defaults,
    then the retry policy.
    """
    priority = options.priority
    if priority is None and queue is not None:
        priority = queue.default_priority
    if priority is None:
        priority = DEFAULT_PRIORITY
    max_attempts = options.max_attempts or policy.for_queue(queue).default_max_attempts
    return priority, max_attempts


def failure_transition(
    policy: RetryPolicy,
    attempts: int,
    max_attempts: int,
    now: datetime,
    retryable: bool = True,
) -> dict[str, Any]:
    """
    Compute the field updates for a failed attempt.

    The retry policy decides between rescheduling and terminal failure;
    non-retryable failures are terminal regardless of the remaining budget.
    """
    decision = policy.decide(attempts, max_attempts)
    if not retryable or not decision.retry:
        return {
            "state": JobState.FAILED,
            "delay_until": None,
            "finished_at": now,
        }
    if decision.delay_ms <= 0:
        return {"state": JobState.WAITING, "delay_until": None, "finished_at": None}
    return {
        "state": JobState.DELAYED,
        "delay_until": now + timedelta(milliseconds=decision.delay_ms),
        "finished_at": None,
    }


class JobStore(abc.ABC):
    """Abstract base for job stores."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        default_concurrency: int = 5,
    ):
        self.policy = policy or RetryPolicy()
        self.clock = clock or utcnow
        self.default_concurrency = default_concurrency

    async def initialize(self) -> None:
        """Prepare the store for use (create schema, open pools)."""

    async def close(self) -> None:
        """Release resources held by the store."""

    async def ping(self) -> bool:
        """Check that the store is reachable."""
        return True

    # ------------------------------------------------------------------
    # Queue configuration
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def upsert_queue(self, config: QueueConfig) -> QueueConfig:
        """Create or replace a queue's configuration, keeping its pause state."""

    @abc.abstractmethod
    async def get_queue(self, queue_name: str) -> QueueConfig | None:
        """Get a queue configuration snapshot."""

    @abc.abstractmethod
    async def list_queues(self) -> list[QueueConfig]:
        """List all known queues."""

    @abc.abstractmethod
    async def set_paused(self, queue_name: str, paused: bool) -> QueueConfig | None:
        """Toggle a queue's pause flag. Returns None for unknown queues."""

    @abc.abstractmethod
    async def record_consumer(self, queue_name: str) -> None:
        """
        Note that a consumer for the queue is alive. Successful claims do the
        same; unknown queues are ignored.
        """

    # ------------------------------------------------------------------
    # Producer / dispatcher operations
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        options: JobOptions | None = None,
    ) -> Job:
        """Persist a new job in ``waiting`` or ``delayed`` state."""

    @abc.abstractmethod
    async def claim_next(self, queue_name: str, worker_id: str) -> Job | None:
        """
        Atomically claim the next eligible job of a queue.

        Eligible: ``waiting``, queue not paused, fewer than ``concurrency``
        jobs active and the rate-limit window not exhausted. Highest priority
        first, ties by creation order. The concurrency and rate limits are
        global: they hold across every process sharing the store.
        """

    @abc.abstractmethod
    async def mark_completed(
        self,
        job_id: str,
        lease_token: str,
        result: Any = None,
    ) -> Job | None:
        """Mark an active job completed. Returns None if the claim is stale."""

    @abc.abstractmethod
    async def mark_failed(
        self,
        job_id: str,
        lease_token: str,
        error: str,
        retryable: bool = True,
    ) -> Job | None:
        """Record a failed attempt and apply the retry policy."""

    @abc.abstractmethod
    async def heartbeat(self, job_ids: Iterable[str], worker_id: str) -> int:
        """Refresh the liveness timestamp of active jobs owned by a worker."""

    # ------------------------------------------------------------------
    # Scheduler operations
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def promote_due(self) -> int:
        """Move due ``delayed`` jobs to ``waiting``. Returns the count."""

    @abc.abstractmethod
    async def next_delayed_at(self) -> datetime | None:
        """Earliest ``delay_until`` among delayed jobs."""

    @abc.abstractmethod
    async def recover_stale(self, stale_before: datetime) -> list[Job]:
        """
        Fail the current attempt of active jobs whose last heartbeat is older
        than ``stale_before``, applying the retry policy.
        """

    # ------------------------------------------------------------------
    # Queries and administration
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get_by_id(self, job_id: str) -> Job | None:
        """Get a job by id."""

    @abc.abstractmethod
    async def list_by_state(
        self,
        queue_name: str,
        state: JobState | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[Sequence[Job], int]:
        """List jobs of a queue, newest first. Returns (jobs, total)."""

    @abc.abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Delete a job in any state."""

    @abc.abstractmethod
    async def retry_failed(self, job_id: str) -> Job | None:
        """
        Move a ``failed`` job back to ``waiting`` with a fresh attempt budget.
        Returns None (and changes nothing) for jobs in any other state.
        """

    @abc.abstractmethod
    async def retry_all_failed(self, queue_name: str, limit: int) -> int:
        """Retry up to ``limit`` failed jobs of a queue, oldest first."""

    @abc.abstractmethod
    async def clean(
        self,
        queue_name: str,
        finished_before: datetime,
        states: Iterable[JobState],
    ) -> int:
        """Delete terminal jobs that finished before a cutoff."""

    @abc.abstractmethod
    async def trim(self, queue_name: str, state: JobState, keep: int) -> int:
        """Delete all but the ``keep`` most recently finished jobs in a state."""

    @abc.abstractmethod
    async def count_by_state(self, queue_name: str | None = None) -> list[QueueStats]:
        """Job counts per state for one queue, or all known queues."""

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def upsert_repeatable(self, repeatable: RepeatableJob) -> RepeatableJob:
        """Create or replace a repeatable job definition."""

    @abc.abstractmethod
    async def list_repeatables(self, queue_name: str | None = None) -> list[RepeatableJob]:
        """List repeatable job definitions ordered by next run."""

    @abc.abstractmethod
    async def remove_repeatable(self, queue_name: str, name: str) -> bool:
        """Delete a repeatable job definition. Jobs already enqueued stay."""

    @abc.abstractmethod
    async def enqueue_due_repeatables(self) -> list[Job]:
        """
        Enqueue one job for every repeatable whose ``next_run_at`` has passed
        and advance it to its next run after now.
        """

    @abc.abstractmethod
    async def next_repeat_at(self) -> datetime | None:
        """Earliest ``next_run_at`` among repeatable jobs."""
