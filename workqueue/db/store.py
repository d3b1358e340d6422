"""
SQLAlchemy-backed job store.

Opens one transactional session per operation and delegates to
``JobRepository``. Database failures surface as ``PersistenceError`` so
producers and admin callers observe them synchronously.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from workqueue.clock import Clock
from workqueue.constants import JobState
from workqueue.db.connection import Database
from workqueue.db.models import Base
from workqueue.db.repository import JobRepository
from workqueue.errors import PersistenceError
from workqueue.retry import RetryPolicy
from workqueue.store.base import JobStore
from workqueue.types.job import Job, JobOptions, QueueConfig, QueueStats, RepeatableJob

logger = logging.getLogger(__name__)


class SqlJobStore(JobStore):
    """
    Job store persisted in a relational database.

    PostgreSQL is the production target; SQLite works for tests and single
    process deployments. SQLite allows one writer at a time, so operations on
    it are serialized in-process.
    """

    def __init__(
        self,
        database: Database,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        default_concurrency: int = 5,
        create_schema: bool = False,
    ):
        super().__init__(policy=policy, clock=clock, default_concurrency=default_concurrency)
        self.database = database
        self._create_schema = create_schema
        self._serial = asyncio.Lock() if database.dialect == "sqlite" else None

    async def initialize(self) -> None:
        if not self._create_schema:
            return
        try:
            async with self.database.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Failed to create schema: {e}") from e
        logger.info("Database schema ensured")

    async def close(self) -> None:
        await self.database.close()

    async def ping(self) -> bool:
        try:
            async with self._repo() as repo:
                await repo.ping()
        except PersistenceError:
            return False
        return True

    @asynccontextmanager
    async def _repo(self) -> AsyncGenerator[JobRepository]:
        """
        Yield a repository bound to a fresh transaction.

        Raises:
            PersistenceError: If the database is unreachable or the
                transaction fails.
        """
        if self._serial is not None:
            await self._serial.acquire()
        try:
            async with self.database.session() as session:
                yield JobRepository(
                    session,
                    policy=self.policy,
                    clock=self.clock,
                    default_concurrency=self.default_concurrency,
                )
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(str(e)) from e
        finally:
            if self._serial is not None:
                self._serial.release()

    # ------------------------------------------------------------------
    # Queue configuration
    # ------------------------------------------------------------------

    async def upsert_queue(self, config: QueueConfig) -> QueueConfig:
        async with self._repo() as repo:
            return await repo.upsert_queue(config)

    async def get_queue(self, queue_name: str) -> QueueConfig | None:
        async with self._repo() as repo:
            return await repo.get_queue(queue_name)

    async def list_queues(self) -> list[QueueConfig]:
        async with self._repo() as repo:
            return await repo.list_queues()

    async def set_paused(self, queue_name: str, paused: bool) -> QueueConfig | None:
        async with self._repo() as repo:
            return await repo.set_paused(queue_name, paused)

    async def record_consumer(self, queue_name: str) -> None:
        async with self._repo() as repo:
            await repo.record_consumer(queue_name)

    # ------------------------------------------------------------------
    # Producer / dispatcher operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        options: JobOptions | None = None,
    ) -> Job:
        async with self._repo() as repo:
            return await repo.create_job(queue_name, payload, options or JobOptions())

    async def claim_next(self, queue_name: str, worker_id: str) -> Job | None:
        async with self._repo() as repo:
            return await repo.claim_next(queue_name, worker_id)

    async def mark_completed(
        self,
        job_id: str,
        lease_token: str,
        result: Any = None,
    ) -> Job | None:
        async with self._repo() as repo:
            return await repo.complete_job(job_id, lease_token, result)

    async def mark_failed(
        self,
        job_id: str,
        lease_token: str,
        error: str,
        retryable: bool = True,
    ) -> Job | None:
        async with self._repo() as repo:
            return await repo.fail_job(job_id, lease_token, error, retryable=retryable)

    async def heartbeat(self, job_ids: Iterable[str], worker_id: str) -> int:
        async with self._repo() as repo:
            return await repo.heartbeat(job_ids, worker_id)

    # ------------------------------------------------------------------
    # Scheduler operations
    # ------------------------------------------------------------------

    async def promote_due(self) -> int:
        async with self._repo() as repo:
            return await repo.promote_due()

    async def next_delayed_at(self) -> datetime | None:
        async with self._repo() as repo:
            return await repo.next_delayed_at()

    async def recover_stale(self, stale_before: datetime) -> list[Job]:
        async with self._repo() as repo:
            return await repo.recover_stale(stale_before)

    # ------------------------------------------------------------------
    # Queries and administration
    # ------------------------------------------------------------------

    async def get_by_id(self, job_id: str) -> Job | None:
        async with self._repo() as repo:
            return await repo.get_job(job_id)

    async def list_by_state(
        self,
        queue_name: str,
        state: JobState | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[Sequence[Job], int]:
        async with self._repo() as repo:
            return await repo.list_jobs(
                queue_name,
                state=state,
                limit=page_size,
                offset=(page - 1) * page_size,
            )

    async def remove(self, job_id: str) -> bool:
        async with self._repo() as repo:
            return await repo.delete_job(job_id)

    async def retry_failed(self, job_id: str) -> Job | None:
        async with self._repo() as repo:
            return await repo.retry_failed(job_id)

    async def retry_all_failed(self, queue_name: str, limit: int) -> int:
        async with self._repo() as repo:
            return await repo.retry_all_failed(queue_name, limit)

    async def clean(
        self,
        queue_name: str,
        finished_before: datetime,
        states: Iterable[JobState],
    ) -> int:
        async with self._repo() as repo:
            return await repo.clean(queue_name, finished_before, list(states))

    async def count_by_state(self, queue_name: str | None = None) -> list[QueueStats]:
        async with self._repo() as repo:
            return await repo.get_job_stats(queue_name)

    async def trim(self, queue_name: str, state: JobState, keep: int) -> int:
        async with self._repo() as repo:
            return await repo.trim(queue_name, state, keep)

    # ------------------------------------------------------------------
    # Repeatable jobs
    # ------------------------------------------------------------------

    async def upsert_repeatable(self, repeatable: RepeatableJob) -> RepeatableJob:
        async with self._repo() as repo:
            return await repo.upsert_repeatable(repeatable)

    async def list_repeatables(self, queue_name: str | None = None) -> list[RepeatableJob]:
        async with self._repo() as repo:
            return await repo.list_repeatables(queue_name)

    async def remove_repeatable(self, queue_name: str, name: str) -> bool:
        async with self._repo() as repo:
            return await repo.remove_repeatable(queue_name, name)

    async def enqueue_due_repeatables(self) -> list[Job]:
        async with self._repo() as repo:
            return await repo.enqueue_due_repeatables()

    async def next_repeat_at(self) -> datetime | None:
        async with self._repo() as repo:
            return await repo.next_repeat_at()
