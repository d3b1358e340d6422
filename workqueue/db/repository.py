"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
import time
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from workqueue.clock import Clock
from workqueue.constants import STALLED_ERROR, TERMINAL_STATES, BackoffType, JobState
from workqueue.db.models import JobModel, QueueModel, RepeatableJobModel
from workqueue.retry import RetryPolicy
from workqueue.store.base import failure_transition, initial_schedule, job_defaults
from workqueue.types.job import Job, JobOptions, QueueConfig, QueueStats, RepeatableJob

logger = logging.getLogger(__name__)

_last_seq = 0


def _next_seq() -> int:
    """Submission order tiebreaker, strictly increasing within a process."""
    global _last_seq
    _last_seq = max(time.time_ns(), _last_seq + 1)
    return _last_seq


def _to_config(row: QueueModel) -> QueueConfig:
    return QueueConfig(
        name=row.name,
        concurrency=row.concurrency,
        is_paused=row.is_paused,
        rate_limit_max=row.rate_limit_max,
        rate_limit_window_ms=row.rate_limit_window_ms,
        default_max_attempts=row.default_max_attempts,
        default_priority=row.default_priority,
        backoff_type=BackoffType(row.backoff_type) if row.backoff_type else None,
        backoff_delay_ms=row.backoff_delay_ms,
        keep_completed_ms=row.keep_completed_ms,
        keep_completed_count=row.keep_completed_count,
        keep_failed_ms=row.keep_failed_ms,
        window_started_at=row.window_started_at,
        window_claims=row.window_claims or 0,
        consumer_seen_at=row.consumer_seen_at,
    )


# Columns owned by queue configuration; the rest is store bookkeeping
_CONFIG_COLUMNS = (
    "concurrency",
    "rate_limit_max",
    "rate_limit_window_ms",
    "default_max_attempts",
    "default_priority",
    "backoff_type",
    "backoff_delay_ms",
    "keep_completed_ms",
    "keep_completed_count",
    "keep_failed_ms",
)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission
    - Claiming with a locked queue row and FOR UPDATE SKIP LOCKED
    - Compare-and-set state transitions guarded by the lease token
    - Delayed promotion and stale-claim recovery
    - Repeatable job scheduling
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: RetryPolicy,
        clock: Clock,
        default_concurrency: int = 5,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            policy: Retry policy applied on failed attempts.
            clock: Time source.
            default_concurrency: Concurrency for queues created implicitly.
        """
        self._session = session
        self._policy = policy
        self._clock = clock
        self._default_concurrency = default_concurrency

    async def ping(self) -> None:
        await self._session.execute(text("SELECT 1"))

    async def _fetch(self, job_id: str) -> Job | None:
        stmt = (
            select(JobModel)
            .where(JobModel.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return Job.model_validate(row) if row is not None else None

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    async def _get_queue_row(self, queue_name: str, lock: bool = False) -> QueueModel | None:
        stmt = select(QueueModel).where(QueueModel.name == queue_name)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _ensure_queue_row(self, queue_name: str, lock: bool = False) -> QueueModel:
        row = await self._get_queue_row(queue_name, lock=lock)
        if row is None:
            row = QueueModel(
                name=queue_name,
                concurrency=self._default_concurrency,
                is_paused=False,
            )
            self._session.add(row)
            await self._session.flush()
        return row

    async def upsert_queue(self, config: QueueConfig) -> QueueConfig:
        """Create or update a queue, preserving its pause flag and bookkeeping."""
        row = await self._get_queue_row(config.name, lock=True)
        if row is None:
            row = QueueModel(name=config.name, is_paused=config.is_paused, window_claims=0)
            self._session.add(row)
        for column in _CONFIG_COLUMNS:
            setattr(row, column, getattr(config, column))
        await self._session.flush()
        return _to_config(row)

    async def get_queue(self, queue_name: str) -> QueueConfig | None:
        row = await self._get_queue_row(queue_name)
        return _to_config(row) if row is not None else None

    async def list_queues(self) -> list[QueueConfig]:
        result = await self._session.execute(select(QueueModel).order_by(QueueModel.name))
        return [_to_config(row) for row in result.scalars().all()]

    async def set_paused(self, queue_name: str, paused: bool) -> QueueConfig | None:
        row = await self._get_queue_row(queue_name, lock=True)
        if row is None:
            return None
        row.is_paused = paused
        await self._session.flush()
        return _to_config(row)

    async def record_consumer(self, queue_name: str) -> None:
        stmt = (
            update(QueueModel)
            .where(QueueModel.name == queue_name)
            .values(consumer_seen_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def _queue_policy(self, queue_name: str) -> RetryPolicy:
        row = await self._get_queue_row(queue_name)
        return self._policy.for_queue(_to_config(row) if row is not None else None)

    # ------------------------------------------------------------------
    # Producer / dispatcher
    # ------------------------------------------------------------------

    async def create_job(
        self,
        queue_name: str,
        payload: Any,
        options: JobOptions,
    ) -> Job:
        """
        Insert a new job.

        Args:
            queue_name: Target queue.
            payload: JSON-serialisable job data.
            options: Enqueue options.

        Returns:
            The persisted Job.
        """
        row = await self._insert(queue_name, payload, options, self._clock())
        logger.info(
            "Created new job",
            extra={"job_id": row.id, "queue": queue_name, "state": row.state.value},
        )
        return Job.model_validate(row)

    async def _insert(
        self,
        queue_name: str,
        payload: Any,
        options: JobOptions,
        now: datetime,
    ) -> JobModel:
        state, delay_until = initial_schedule(options, now)
        queue = await self._ensure_queue_row(queue_name)
        priority, max_attempts = job_defaults(options, _to_config(queue), self._policy)

        row = JobModel(
            id=uuid4().hex,
            queue_name=queue_name,
            payload=payload,
            state=state,
            priority=priority,
            seq=_next_seq(),
            attempts=0,
            max_attempts=max_attempts,
            delay_until=delay_until,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def claim_next(self, queue_name: str, worker_id: str) -> Job | None:
        """
        Claim the next eligible job of a queue.

        This is the critical path for job distribution. The queue row lock
        serializes claimers of one queue so the concurrency check cannot be
        raced; the final compare-and-set on ``state`` guarantees a single
        winner even where row locks are unavailable.

        Args:
            queue_name: The queue to claim from.
            worker_id: The claiming worker.

        Returns:
            The claimed Job or None.
        """
        queue = await self._ensure_queue_row(queue_name, lock=True)
        config = _to_config(queue)
        now = self._clock()
        if config.is_paused or config.claims_exhausted(now):
            return None

        active_stmt = select(func.count()).select_from(JobModel).where(
            and_(JobModel.queue_name == queue_name, JobModel.state == JobState.ACTIVE)
        )
        active = (await self._session.execute(active_stmt)).scalar() or 0
        if active >= queue.concurrency:
            return None

        candidate_stmt = (
            select(JobModel.id)
            .where(
                and_(
                    JobModel.queue_name == queue_name,
                    JobModel.state == JobState.WAITING,
                )
            )
            .order_by(
                JobModel.priority.desc(),
                JobModel.created_at.asc(),
                JobModel.seq.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job_id = (await self._session.execute(candidate_stmt)).scalar_one_or_none()
        if job_id is None:
            return None

        stmt = (
            update(JobModel)
            .where(and_(JobModel.id == job_id, JobModel.state == JobState.WAITING))
            .values(
                state=JobState.ACTIVE,
                attempts=JobModel.attempts + 1,
                started_at=now,
                heartbeat_at=now,
                finished_at=None,
                worker_id=worker_id,
                lease_token=uuid4().hex,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        # Still under the queue row lock
        claimed = config.after_claim(now)
        queue.window_started_at = claimed.window_started_at
        queue.window_claims = claimed.window_claims
        queue.consumer_seen_at = claimed.consumer_seen_at
        await self._session.flush()
        return await self._fetch(job_id)

    async def complete_job(
        self,
        job_id: str,
        lease_token: str,
        result: Any = None,
    ) -> Job | None:
        """
        Mark job as successfully completed.

        Args:
            job_id: The job id.
            lease_token: Token of the claim being completed.
            result: Handler return value.

        Returns:
            Updated Job or None if the claim is no longer current.
        """
        now = self._clock()
        stmt = (
            update(JobModel)
            .where(
                and_(
                    JobModel.id == job_id,
                    JobModel.state == JobState.ACTIVE,
                    JobModel.lease_token == lease_token,
                )
            )
            .values(
                state=JobState.COMPLETED,
                result=result,
                finished_at=now,
                updated_at=now,
                lease_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        outcome = await self._session.execute(stmt)
        if outcome.rowcount != 1:
            return None
        return await self._fetch(job_id)

    async def _fail(
        self,
        policy: RetryPolicy,
        job_id: str,
        lease_token: str,
        attempts: int,
        max_attempts: int,
        error: str,
        retryable: bool,
    ) -> bool:
        now = self._clock()
        updates = failure_transition(policy, attempts, max_attempts, now, retryable=retryable)
        stmt = (
            update(JobModel)
            .where(
                and_(
                    JobModel.id == job_id,
                    JobModel.state == JobState.ACTIVE,
                    JobModel.lease_token == lease_token,
                )
            )
            .values(
                **updates,
                last_error=error,
                lease_token=None,
                heartbeat_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        outcome = await self._session.execute(stmt)
        return outcome.rowcount == 1

    async def fail_job(
        self,
        job_id: str,
        lease_token: str,
        error: str,
        retryable: bool = True,
    ) -> Job | None:
        """
        Handle a failed attempt. Either reschedule or fail terminally.

        Args:
            job_id: The job id.
            lease_token: Token of the claim being reported.
            error: Error message.
            retryable: False for permanent failures.

        Returns:
            Updated Job or None if the claim is no longer current.
        """
        stmt = (
            select(JobModel.queue_name, JobModel.attempts, JobModel.max_attempts)
            .where(
                and_(
                    JobModel.id == job_id,
                    JobModel.state == JobState.ACTIVE,
                    JobModel.lease_token == lease_token,
                )
            )
            .with_for_update()
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            logger.warning(
                "Failure report for a job this worker no longer owns",
                extra={"job_id": job_id},
            )
            return None

        policy = await self._queue_policy(row.queue_name)
        if not await self._fail(
            policy, job_id, lease_token, row.attempts, row.max_attempts, error, retryable
        ):
            return None
        return await self._fetch(job_id)

    async def heartbeat(self, job_ids: Iterable[str], worker_id: str) -> int:
        """Refresh heartbeat_at on active jobs owned by ``worker_id``."""
        ids = list(job_ids)
        if not ids:
            return 0
        stmt = (
            update(JobModel)
            .where(
                and_(
                    JobModel.id.in_(ids),
                    JobModel.worker_id == worker_id,
                    JobModel.state == JobState.ACTIVE,
                )
            )
            .values(heartbeat_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def promote_due(self) -> int:
        """
        Move due delayed jobs to waiting.

        The state predicate makes the update idempotent: a promoted job no
        longer matches, so no job is promoted twice.
        """
        now = self._clock()
        stmt = (
            update(JobModel)
            .where(
                and_(
                    JobModel.state == JobState.DELAYED,
                    JobModel.delay_until <= now,
                )
            )
            .values(state=JobState.WAITING, delay_until=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def next_delayed_at(self) -> datetime | None:
        stmt = select(func.min(JobModel.delay_until)).where(
            JobModel.state == JobState.DELAYED
        )
        return (await self._session.execute(stmt)).scalar()

    async def recover_stale(self, stale_before: datetime) -> list[Job]:
        """
        Recover active jobs whose claimer stopped heartbeating.

        Each recovered job counts as a failed attempt, so the retry policy and
        the attempt bound apply exactly as for a handler failure.
        """
        stmt = (
            select(
                JobModel.id,
                JobModel.queue_name,
                JobModel.lease_token,
                JobModel.attempts,
                JobModel.max_attempts,
            )
            .where(
                and_(
                    JobModel.state == JobState.ACTIVE,
                    func.coalesce(JobModel.heartbeat_at, JobModel.started_at) < stale_before,
                )
            )
            .with_for_update(skip_locked=True)
        )
        rows = (await self._session.execute(stmt)).all()

        recovered = []
        policies: dict[str, RetryPolicy] = {}
        for row in rows:
            if row.queue_name not in policies:
                policies[row.queue_name] = await self._queue_policy(row.queue_name)
            if await self._fail(
                policies[row.queue_name],
                row.id,
                row.lease_token,
                row.attempts,
                row.max_attempts,
                STALLED_ERROR,
                retryable=True,
            ):
                job = await self._fetch(row.id)
                if job is not None:
                    recovered.append(job)

        if recovered:
            logger.info(f"Recovered {len(recovered)} stale jobs")
        return recovered

    # ------------------------------------------------------------------
    # Queries and administration
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        """Get a job by id."""
        return await self._fetch(job_id)

    async def list_jobs(
        self,
        queue_name: str,
        state: JobState | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs of a queue with optional state filtering.

        Returns:
            Tuple of (jobs, total_count).
        """
        base_filter = JobModel.queue_name == queue_name
        if state is not None:
            base_filter = and_(base_filter, JobModel.state == state)

        count_stmt = select(func.count()).select_from(JobModel).where(base_filter)
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(JobModel)
            .where(base_filter)
            .order_by(JobModel.created_at.desc(), JobModel.seq.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [Job.model_validate(row) for row in result.scalars().all()], total

    async def delete_job(self, job_id: str) -> bool:
        stmt = (
            delete(JobModel)
            .where(JobModel.id == job_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    def _reset_values(self) -> dict[str, Any]:
        return {
            "state": JobState.WAITING,
            "attempts": 0,
            "last_error": None,
            "result": None,
            "delay_until": None,
            "started_at": None,
            "finished_at": None,
            "worker_id": None,
            "updated_at": self._clock(),
        }

    async def retry_failed(self, job_id: str) -> Job | None:
        """
        Move a failed job back to waiting with a fresh attempt budget.

        Returns:
            Updated Job or None if the job is not in ``failed``.
        """
        stmt = (
            update(JobModel)
            .where(and_(JobModel.id == job_id, JobModel.state == JobState.FAILED))
            .values(**self._reset_values())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        logger.info("Job retried", extra={"job_id": job_id})
        return await self._fetch(job_id)

    async def retry_all_failed(self, queue_name: str, limit: int) -> int:
        select_stmt = (
            select(JobModel.id)
            .where(
                and_(
                    JobModel.queue_name == queue_name,
                    JobModel.state == JobState.FAILED,
                )
            )
            .order_by(JobModel.finished_at.asc(), JobModel.seq.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        ids = list((await self._session.execute(select_stmt)).scalars().all())
        if not ids:
            return 0

        stmt = (
            update(JobModel)
            .where(and_(JobModel.id.in_(ids), JobModel.state == JobState.FAILED))
            .values(**self._reset_values())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def clean(
        self,
        queue_name: str,
        finished_before: datetime,
        states: Iterable[JobState],
    ) -> int:
        targets = [state for state in states if state in TERMINAL_STATES]
        if not targets:
            return 0

        stmt = (
            delete(JobModel)
            .where(
                and_(
                    JobModel.queue_name == queue_name,
                    JobModel.state.in_(targets),
                    JobModel.finished_at < finished_before,
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount:
            logger.info(
                f"Cleaned {result.rowcount} jobs",
                extra={"queue": queue_name},
            )
        return result.rowcount

    async def get_job_stats(self, queue_name: str | None = None) -> list[QueueStats]:
        """
        Get job statistics by state.

        Args:
            queue_name: Optional queue filter.

        Returns:
            One QueueStats per queue.
        """
        stmt = select(JobModel.queue_name, JobModel.state, func.count()).group_by(
            JobModel.queue_name, JobModel.state
        )
        queue_stmt = select(QueueModel)
        if queue_name is not None:
            stmt = stmt.where(JobModel.queue_name == queue_name)
            queue_stmt = queue_stmt.where(QueueModel.name == queue_name)

        queues = {
            row.name: row
            for row in (
                await self._session.execute(
                    queue_stmt.execution_options(populate_existing=True)
                )
            ).scalars().all()
        }
        counts = (await self._session.execute(stmt)).all()

        names = set(queues) | {name for name, _, _ in counts}
        if queue_name is not None:
            names.add(queue_name)

        stats = {}
        for name in names:
            queue = queues.get(name)
            stats[name] = QueueStats(
                name=name,
                paused=bool(queue and queue.is_paused),
                consumer_seen_at=queue.consumer_seen_at if queue else None,
            )
        for name, state, count in counts:
            state = JobState(state)
            setattr(stats[name], state.value, count)
        return [stats[name] for name in sorted(names)]

    async def trim(self, queue_name: str, state: JobState, keep: int) -> int:
        """Delete all but the ``keep`` most recently finished jobs in ``state``."""
        select_stmt = (
            select(JobModel.id)
            .where(and_(JobModel.queue_name == queue_name, JobModel.state == state))
            .order_by(JobModel.finished_at.desc(), JobModel.seq.desc())
            .offset(keep)
        )
        ids = list((await self._session.execute(select_stmt)).scalars().all())
        if not ids:
            return 0

        stmt = (
            delete(JobModel)
            .where(JobModel.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    async def upsert_repeatable(self, repeatable: RepeatableJob) -> RepeatableJob:
        await self._ensure_queue_row(repeatable.queue_name)
        stmt = (
            select(RepeatableJobModel)
            .where(
                and_(
                    RepeatableJobModel.queue_name == repeatable.queue_name,
                    RepeatableJobModel.name == repeatable.name,
                )
            )
            .with_for_update()
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = RepeatableJobModel(queue_name=repeatable.queue_name, name=repeatable.name)
            self._session.add(row)
        for field_name, value in repeatable.model_dump(exclude={"queue_name", "name"}).items():
            setattr(row, field_name, value)
        await self._session.flush()

        logger.info(
            "Repeatable job saved",
            extra={"queue": repeatable.queue_name, "repeatable": repeatable.name},
        )
        return RepeatableJob.model_validate(row)

    async def list_repeatables(self, queue_name: str | None = None) -> list[RepeatableJob]:
        stmt = select(RepeatableJobModel).order_by(
            RepeatableJobModel.next_run_at,
            RepeatableJobModel.queue_name,
            RepeatableJobModel.name,
        )
        if queue_name is not None:
            stmt = stmt.where(RepeatableJobModel.queue_name == queue_name)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [RepeatableJob.model_validate(row) for row in result.scalars().all()]

    async def remove_repeatable(self, queue_name: str, name: str) -> bool:
        stmt = (
            delete(RepeatableJobModel)
            .where(
                and_(
                    RepeatableJobModel.queue_name == queue_name,
                    RepeatableJobModel.name == name,
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def enqueue_due_repeatables(self) -> list[Job]:
        """
        Enqueue one job per due repeatable and advance its schedule.

        Rows are locked with SKIP LOCKED so concurrent schedulers never
        enqueue the same run twice.
        """
        now = self._clock()
        stmt = (
            select(RepeatableJobModel)
            .where(RepeatableJobModel.next_run_at <= now)
            .order_by(RepeatableJobModel.next_run_at)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        rows = (await self._session.execute(stmt)).scalars().all()

        enqueued = []
        for row in rows:
            repeatable = RepeatableJob.model_validate(row)
            options = JobOptions(priority=repeatable.priority, max_attempts=repeatable.max_attempts)
            job_row = await self._insert(repeatable.queue_name, repeatable.payload, options, now)
            row.last_run_at = now
            row.next_run_at = repeatable.next_after(now)
            enqueued.append(Job.model_validate(job_row))
        await self._session.flush()
        return enqueued

    async def next_repeat_at(self) -> datetime | None:
        stmt = select(func.min(RepeatableJobModel.next_run_at))
        return (await self._session.execute(stmt)).scalar()
