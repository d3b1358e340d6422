"""
In-memory job store.

Single-process implementation of the job store contract. All operations run
under one ``asyncio.Lock``, which makes every transition, including the
claim, atomic with respect to concurrent dispatchers on the same event loop.
"""

import asyncio
import itertools
import logging
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from workqueue.clock import Clock
from workqueue.constants import STALLED_ERROR, TERMINAL_STATES, JobState
from workqueue.retry import RetryPolicy
from workqueue.store.base import JobStore, failure_transition, initial_schedule, job_defaults
from workqueue.types.job import Job, JobOptions, QueueConfig, QueueStats, RepeatableJob

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """
    Job store backed by plain dictionaries.

    Jobs are stored as pydantic models and copied on the way out, so callers
    only ever see snapshots.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        default_concurrency: int = 5,
    ):
        super().__init__(policy=policy, clock=clock, default_concurrency=default_concurrency)
        self._jobs: dict[str, Job] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._queues: dict[str, QueueConfig] = {}
        self._repeatables: dict[tuple[str, str], RepeatableJob] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Queue configuration
    # ------------------------------------------------------------------

    def _queue_or_default(self, queue_name: str) -> QueueConfig:
        config = self._queues.get(queue_name)
        if config is None:
            config = QueueConfig(name=queue_name, concurrency=self.default_concurrency)
            self._queues[queue_name] = config
        return config

    async def upsert_queue(self, config: QueueConfig) -> QueueConfig:
        async with self._lock:
            existing = self._queues.get(config.name)
            if existing is not None:
                config = replace(
                    config,
                    is_paused=existing.is_paused,
                    window_started_at=existing.window_started_at,
                    window_claims=existing.window_claims,
                    consumer_seen_at=existing.consumer_seen_at,
                )
            self._queues[config.name] = config
            return config

    async def get_queue(self, queue_name: str) -> QueueConfig | None:
        async with self._lock:
            return self._queues.get(queue_name)

    async def list_queues(self) -> list[QueueConfig]:
        async with self._lock:
            return sorted(self._queues.values(), key=lambda q: q.name)

    async def set_paused(self, queue_name: str, paused: bool) -> QueueConfig | None:
        async with self._lock:
            current = self._queues.get(queue_name)
            if current is None:
                return None
            updated = replace(current, is_paused=paused)
            self._queues[queue_name] = updated
            return updated

    async def record_consumer(self, queue_name: str) -> None:
        async with self._lock:
            current = self._queues.get(queue_name)
            if current is not None:
                self._queues[queue_name] = replace(current, consumer_seen_at=self.clock())

    # ------------------------------------------------------------------
    # Producer / dispatcher operations
    # ------------------------------------------------------------------

    def _insert(self, queue_name: str, payload: Any, options: JobOptions, now: datetime) -> Job:
        state, delay_until = initial_schedule(options, now)
        queue = self._queue_or_default(queue_name)
        priority, max_attempts = job_defaults(options, queue, self.policy)
        job = Job(
            id=uuid4().hex,
            queue_name=queue_name,
            payload=payload,
            priority=priority,
            state=state,
            attempts=0,
            max_attempts=max_attempts,
            delay_until=delay_until,
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.id] = job
        self._sequence[job.id] = next(self._counter)
        return job

    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        options: JobOptions | None = None,
    ) -> Job:
        options = options or JobOptions()
        async with self._lock:
            job = self._insert(queue_name, payload, options, self.clock())
            return job.model_copy(deep=True)

    async def claim_next(self, queue_name: str, worker_id: str) -> Job | None:
        async with self._lock:
            config = self._queue_or_default(queue_name)
            now = self.clock()
            if config.is_paused or config.claims_exhausted(now):
                return None

            active = 0
            candidates = []
            for job in self._jobs.values():
                if job.queue_name != queue_name:
                    continue
                if job.state == JobState.ACTIVE:
                    active += 1
                elif job.state == JobState.WAITING:
                    candidates.append(job)

            if active >= config.concurrency or not candidates:
                return None

            job = min(
                candidates,
                key=lambda j: (-j.priority, j.created_at, self._sequence[j.id]),
            )
            job.state = JobState.ACTIVE
            job.attempts += 1
            job.started_at = now
            job.heartbeat_at = now
            job.finished_at = None
            job.worker_id = worker_id
            job.lease_token = uuid4().hex
            job.updated_at = now
            self._queues[queue_name] = config.after_claim(now)
            return job.model_copy(deep=True)

    def _owned_active(self, job_id: str, lease_token: str) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE or job.lease_token != lease_token:
            return None
        return job

    async def mark_completed(
        self,
        job_id: str,
        lease_token: str,
        result: Any = None,
    ) -> Job | None:
        async with self._lock:
            job = self._owned_active(job_id, lease_token)
            if job is None:
                return None
            now = self.clock()
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = now
            job.updated_at = now
            job.lease_token = None
            return job.model_copy(deep=True)

    def _apply_failure(self, job: Job, error: str, retryable: bool) -> None:
        now = self.clock()
        policy = self.policy.for_queue(self._queues.get(job.queue_name))
        updates = failure_transition(
            policy, job.attempts, job.max_attempts, now, retryable=retryable
        )
        for key, value in updates.items():
            setattr(job, key, value)
        job.last_error = error
        job.lease_token = None
        job.heartbeat_at = None
        job.updated_at = now

    async def mark_failed(
        self,
        job_id: str,
        lease_token: str,
        error: str,
        retryable: bool = True,
    ) -> Job | None:
        async with self._lock:
            job = self._owned_active(job_id, lease_token)
            if job is None:
                return None
            self._apply_failure(job, error, retryable)
            return job.model_copy(deep=True)

    async def heartbeat(self, job_ids: Iterable[str], worker_id: str) -> int:
        async with self._lock:
            now = self.clock()
            count = 0
            for job_id in job_ids:
                job = self._jobs.get(job_id)
                if job and job.state == JobState.ACTIVE and job.worker_id == worker_id:
                    job.heartbeat_at = now
                    count += 1
            return count

    # ------------------------------------------------------------------
    # Scheduler operations
    # ------------------------------------------------------------------

    async def promote_due(self) -> int:
        async with self._lock:
            now = self.clock()
            count = 0
            for job in self._jobs.values():
                if job.state == JobState.DELAYED and job.delay_until and job.delay_until <= now:
                    job.state = JobState.WAITING
                    job.delay_until = None
                    job.updated_at = now
                    count += 1
            return count

    async def next_delayed_at(self) -> datetime | None:
        async with self._lock:
            due = [
                job.delay_until
                for job in self._jobs.values()
                if job.state == JobState.DELAYED and job.delay_until is not None
            ]
            return min(due) if due else None

    async def recover_stale(self, stale_before: datetime) -> list[Job]:
        async with self._lock:
            recovered = []
            for job in self._jobs.values():
                if job.state != JobState.ACTIVE:
                    continue
                seen = job.heartbeat_at or job.started_at
                if seen is not None and seen < stale_before:
                    self._apply_failure(job, STALLED_ERROR, retryable=True)
                    recovered.append(job.model_copy(deep=True))
            return recovered

    # ------------------------------------------------------------------
    # Queries and administration
    # ------------------------------------------------------------------

    async def get_by_id(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def list_by_state(
        self,
        queue_name: str,
        state: JobState | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[Sequence[Job], int]:
        async with self._lock:
            matching = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name and (state is None or job.state == state)
            ]
            matching.sort(
                key=lambda j: (j.created_at, self._sequence[j.id]), reverse=True
            )
            offset = (page - 1) * page_size
            window = matching[offset : offset + page_size]
            return [job.model_copy(deep=True) for job in window], len(matching)

    async def remove(self, job_id: str) -> bool:
        async with self._lock:
            self._sequence.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    def _reset_failed(self, job: Job) -> None:
        now = self.clock()
        job.state = JobState.WAITING
        job.attempts = 0
        job.last_error = None
        job.result = None
        job.delay_until = None
        job.finished_at = None
        job.started_at = None
        job.worker_id = None
        job.updated_at = now

    async def retry_failed(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.FAILED:
                return None
            self._reset_failed(job)
            return job.model_copy(deep=True)

    async def retry_all_failed(self, queue_name: str, limit: int) -> int:
        async with self._lock:
            failed = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.queue_name == queue_name and job.state == JobState.FAILED
                ),
                key=lambda j: (j.finished_at or j.created_at, self._sequence[j.id]),
            )
            for job in failed[:limit]:
                self._reset_failed(job)
            return len(failed[:limit])

    async def clean(
        self,
        queue_name: str,
        finished_before: datetime,
        states: Iterable[JobState],
    ) -> int:
        targets = set(states) & TERMINAL_STATES
        async with self._lock:
            doomed = [
                job.id
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.state in targets
                and job.finished_at is not None
                and job.finished_at < finished_before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
                self._sequence.pop(job_id, None)
            if doomed:
                logger.info(
                    f"Cleaned {len(doomed)} jobs",
                    extra={"queue": queue_name},
                )
            return len(doomed)

    async def count_by_state(self, queue_name: str | None = None) -> list[QueueStats]:
        async with self._lock:
            if queue_name is not None:
                names = [queue_name]
            else:
                names = sorted(
                    set(self._queues) | {job.queue_name for job in self._jobs.values()}
                )
            stats = {}
            for name in names:
                config = self._queues.get(name)
                stats[name] = QueueStats(
                    name=name,
                    paused=bool(config and config.is_paused),
                    consumer_seen_at=config.consumer_seen_at if config else None,
                )
            for job in self._jobs.values():
                entry = stats.get(job.queue_name)
                if entry is not None:
                    setattr(entry, job.state.value, getattr(entry, job.state.value) + 1)
            return [stats[name] for name in names]

    async def trim(self, queue_name: str, state: JobState, keep: int) -> int:
        async with self._lock:
            finished = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.queue_name == queue_name and job.state == state
                ),
                key=lambda j: (j.finished_at or j.created_at, self._sequence[j.id]),
                reverse=True,
            )
            doomed = [job.id for job in finished[keep:]]
            for job_id in doomed:
                del self._jobs[job_id]
                self._sequence.pop(job_id, None)
            return len(doomed)

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    async def upsert_repeatable(self, repeatable: RepeatableJob) -> RepeatableJob:
        async with self._lock:
            self._queue_or_default(repeatable.queue_name)
            key = (repeatable.queue_name, repeatable.name)
            self._repeatables[key] = repeatable.model_copy(deep=True)
            return repeatable

    async def list_repeatables(self, queue_name: str | None = None) -> list[RepeatableJob]:
        async with self._lock:
            found = [
                r.model_copy(deep=True)
                for r in self._repeatables.values()
                if queue_name is None or r.queue_name == queue_name
            ]
            return sorted(found, key=lambda r: (r.next_run_at, r.queue_name, r.name))

    async def remove_repeatable(self, queue_name: str, name: str) -> bool:
        async with self._lock:
            return self._repeatables.pop((queue_name, name), None) is not None

    async def enqueue_due_repeatables(self) -> list[Job]:
        async with self._lock:
            now = self.clock()
            enqueued = []
            due = sorted(
                (r for r in self._repeatables.values() if r.next_run_at <= now),
                key=lambda r: r.next_run_at,
            )
            for repeatable in due:
                options = JobOptions(
                    priority=repeatable.priority,
                    max_attempts=repeatable.max_attempts,
                )
                job = self._insert(repeatable.queue_name, repeatable.payload, options, now)
                repeatable.last_run_at = now
                repeatable.next_run_at = repeatable.next_after(now)
                enqueued.append(job.model_copy(deep=True))
            return enqueued

    async def next_repeat_at(self) -> datetime | None:
        async with self._lock:
            runs = [r.next_run_at for r in self._repeatables.values()]
            return min(runs) if runs else None
