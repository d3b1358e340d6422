"""
Queue engine.

Wires the job store, handler registry, dispatchers, scheduler, event emitter
and admin service into one object with an explicit lifecycle:

    engine = QueueEngine(store, settings)

    @engine.handler("mail", concurrency=2)
    async def send_mail(payload, context):
        ...

    await engine.init()
    await engine.enqueue("mail", {"to": "someone@example.com"})
    ...
    await engine.shutdown()
"""

import logging
import os
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from workqueue.admin.service import AdminService
from workqueue.config import Settings, get_settings
from workqueue.constants import SPAN_ENQUEUE_JOB, BackoffType, JobState
from workqueue.db.connection import Database
from workqueue.db.store import SqlJobStore
from workqueue.errors import InvalidJobOptionsError
from workqueue.observability.events import EventEmitter
from workqueue.observability.health import HealthThresholds
from workqueue.observability.metrics import MetricsCollector, get_metrics
from workqueue.observability.tracing import get_tracer
from workqueue.retry import RetryPolicy
from workqueue.scheduler.main import Scheduler
from workqueue.store.base import JobStore
from workqueue.types.events import JobEvent
from workqueue.types.job import Backoff, Job, JobOptions, QueueConfig, RepeatableJob, Retention
from workqueue.worker.dispatcher import QueueDispatcher
from workqueue.worker.registry import HandlerRegistry, HandlerSpec, JobHandler, RateLimit

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Hostname + PID."""
    return f"{os.uname().nodename}-{os.getpid()}"


def build_store(settings: Settings) -> JobStore:
    """Create the SQL job store described by ``settings``."""
    return SqlJobStore(
        Database.from_settings(settings),
        policy=RetryPolicy.from_settings(settings),
        default_concurrency=settings.default_queue_concurrency,
    )


class QueueEngine:
    """
    Background job engine for one process.

    Handlers are registered before ``init()``; after that the registry is
    frozen and one dispatcher per registered queue is running. Producers may
    enqueue into any queue at any time, including queues handled by other
    processes.
    """

    def __init__(
        self,
        store: JobStore | None = None,
        settings: Settings | None = None,
        emitter: EventEmitter | None = None,
        metrics: MetricsCollector | None = None,
        worker_id: str | None = None,
        run_scheduler: bool = True,
    ):
        """
        Initialize the engine.

        Args:
            store: Job store. Defaults to the SQL store from settings.
            settings: Application settings.
            emitter: Event emitter; one is created when omitted.
            metrics: Metrics collector.
            worker_id: Identifier recorded on claimed jobs.
            run_scheduler: Run the delayed-job scheduler in this process.
        """
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.metrics = metrics or get_metrics()
        self.emitter = emitter or EventEmitter(self.metrics)
        self.worker_id = worker_id or self.settings.worker_id or default_worker_id()
        self.registry = HandlerRegistry()

        self.scheduler: Scheduler | None = None
        if run_scheduler:
            self.scheduler = Scheduler(
                self.store,
                self.emitter,
                interval_seconds=self.settings.scheduler_interval_seconds,
                stale_job_timeout_seconds=self.settings.stale_job_timeout_seconds,
                metrics=self.metrics,
                on_promoted=self.wake_all,
                default_retention=Retention.from_settings(self.settings),
                retention_interval_seconds=self.settings.retention_interval_seconds,
            )

        self.admin = AdminService(
            self.store,
            self.emitter,
            thresholds=HealthThresholds.from_settings(self.settings),
            handler_names=self._handled_queues,
            cancel_local=self.cancel_local,
            wake_queue=self.wake,
            clean_default_grace_ms=self.settings.clean_default_grace_ms,
            metrics=self.metrics,
        )

        self._dispatchers: dict[str, QueueDispatcher] = {}
        self._started = False
        self._started_at: datetime | None = None

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def register_handler(
        self,
        queue_name: str,
        handler: JobHandler,
        *,
        concurrency: int | None = None,
        rate_limit: RateLimit | tuple[int, int] | None = None,
        max_attempts: int | None = None,
        priority: int | None = None,
        backoff: Backoff | tuple[BackoffType | str, int] | None = None,
        retention: Retention | None = None,
    ) -> HandlerSpec:
        """
        Register the handler for a queue.

        Queue options are applied to the stored queue at ``init()``.

        Args:
            queue_name: Queue the handler processes.
            handler: Callable taking ``(payload, context)``; async or sync.
            concurrency: Queue-wide limit on active jobs.
            rate_limit: ``(max, window_ms)`` queue-wide claim rate limit.
            max_attempts: Default attempt budget for the queue's jobs.
            priority: Default priority for the queue's jobs.
            backoff: ``(type, delay_ms)`` retry backoff for the queue.
            retention: Automatic removal of finished jobs.

        Raises:
            HandlerRegistrationError: After ``init()``, for a queue that
                already has a handler, or for invalid options.
        """
        return self.registry.register(
            queue_name,
            handler,
            concurrency=concurrency,
            rate_limit=rate_limit,
            max_attempts=max_attempts,
            priority=priority,
            backoff=backoff,
            retention=retention,
        )

    def handler(
        self,
        queue_name: str,
        **options: Any,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a handler. Accepts the queue options of
        ``register_handler``.

        Example:
            @engine.handler("send_email", concurrency=2, backoff=("fixed", 5000))
            async def send_email(payload, context):
                ...
        """

        def decorator(fn: JobHandler) -> JobHandler:
            self.register_handler(queue_name, fn, **options)
            return fn

        return decorator

    async def configure_queue(
        self,
        queue_name: str,
        *,
        concurrency: int | None = None,
        rate_limit: RateLimit | tuple[int, int] | None = None,
        max_attempts: int | None = None,
        priority: int | None = None,
        backoff: Backoff | tuple[BackoffType | str, int] | None = None,
        retention: Retention | None = None,
    ) -> QueueConfig:
        """
        Create or update a queue's configuration. The pause flag is kept.

        Unspecified values keep their stored setting, or the defaults for a
        new queue.

        Raises:
            InvalidJobOptionsError: For invalid option values.
        """
        if concurrency is not None and concurrency < 1:
            raise InvalidJobOptionsError("concurrency must be at least 1")
        if max_attempts is not None and max_attempts < 1:
            raise InvalidJobOptionsError("max_attempts must be at least 1")
        if isinstance(rate_limit, tuple):
            rate_limit = RateLimit(*rate_limit)
        if isinstance(backoff, tuple):
            backoff = Backoff(*backoff)

        changes: dict[str, Any] = {}
        if concurrency is not None:
            changes["concurrency"] = concurrency
        if rate_limit is not None:
            changes.update(rate_limit_max=rate_limit.max, rate_limit_window_ms=rate_limit.window_ms)
        if max_attempts is not None:
            changes["default_max_attempts"] = max_attempts
        if priority is not None:
            changes["default_priority"] = priority
        if backoff is not None:
            changes.update(backoff_type=backoff.type, backoff_delay_ms=backoff.delay_ms)
        if retention is not None:
            changes.update(
                keep_completed_ms=retention.completed_age_ms,
                keep_completed_count=retention.completed_count,
                keep_failed_ms=retention.failed_age_ms,
            )

        existing = await self.store.get_queue(queue_name)
        base = existing or QueueConfig(
            name=queue_name, concurrency=self.settings.default_queue_concurrency
        )
        stored = await self.store.upsert_queue(replace(base, **changes))
        self.wake(queue_name)
        return stored

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def init(self) -> None:
        """
        Initialize the store, freeze the registry and start dispatching.
        """
        if self._started:
            return

        await self.store.initialize()
        self.registry.freeze()

        for spec in self.registry:
            await self.configure_queue(
                spec.queue_name,
                concurrency=spec.concurrency,
                rate_limit=spec.rate_limit,
                max_attempts=spec.max_attempts,
                priority=spec.priority,
                backoff=spec.backoff,
                retention=spec.retention,
            )
            self._dispatchers[spec.queue_name] = QueueDispatcher(
                self.store,
                spec,
                self.emitter,
                worker_id=self.worker_id,
                poll_interval=self.settings.worker_poll_interval_seconds,
                heartbeat_interval=self.settings.worker_heartbeat_interval_seconds,
                metrics=self.metrics,
                on_delayed=self._notify_scheduler,
            )

        for dispatcher in self._dispatchers.values():
            await dispatcher.start()
        if self.scheduler is not None:
            await self.scheduler.start()

        self._started = True
        self._started_at = self.store.clock()
        logger.info(
            "Queue engine started",
            extra={
                "worker_id": self.worker_id,
                "queues": self.registry.queue_names(),
                "scheduler": self.scheduler is not None,
            },
        )

    async def shutdown(self, grace_period: float | None = None, close_store: bool = True) -> None:
        """
        Stop claiming, drain in-flight jobs and release the store.

        Args:
            grace_period: Seconds to wait for in-flight jobs. Defaults to
                ``shutdown_grace_period_seconds``.
            close_store: Close the store after stopping.
        """
        grace = (
            self.settings.shutdown_grace_period_seconds if grace_period is None else grace_period
        )
        logger.info("Queue engine stopping", extra={"worker_id": self.worker_id})

        if self.scheduler is not None:
            await self.scheduler.stop()

        abandoned: list[str] = []
        for dispatcher in self._dispatchers.values():
            abandoned.extend(await dispatcher.stop(grace))

        self._dispatchers.clear()
        self._started = False

        if close_store:
            await self.store.close()

        logger.info(
            "Queue engine stopped",
            extra={"worker_id": self.worker_id, "abandoned": len(abandoned)},
        )

    async def __aenter__(self) -> "QueueEngine":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue_name: str,
        payload: Any = None,
        *,
        delay: int | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        run_at: datetime | None = None,
    ) -> Job:
        """
        Submit a job.

        Args:
            queue_name: Target queue.
            payload: JSON-serialisable job data.
            delay: Milliseconds before the job becomes claimable.
            priority: Higher runs first. Defaults to the queue's default, then 0.
            max_attempts: Attempt budget. Defaults to the queue's default,
                then the retry policy's.
            run_at: Absolute time before which the job is not claimable.

        Returns:
            The persisted job.

        Raises:
            InvalidJobOptionsError: If the options are invalid.
            PersistenceError: If the store is unreachable. The job was not
                accepted and the caller should handle the failure.
        """
        if not queue_name:
            raise InvalidJobOptionsError("queue_name must not be empty")
        try:
            options = JobOptions(
                delay=delay, priority=priority, max_attempts=max_attempts, run_at=run_at
            )
        except ValidationError as e:
            raise InvalidJobOptionsError(str(e)) from e

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", queue_name)
            job = await self.store.enqueue(queue_name, payload, options)
            span.set_attribute("job_id", job.id)

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "queue": queue_name,
                "state": job.state.value,
                "priority": job.priority,
            },
        )
        self.metrics.record_enqueued(queue_name)
        await self.emitter.emit(JobEvent.enqueued(job))

        if job.state == JobState.WAITING:
            self.wake(queue_name)
        else:
            self._notify_scheduler(job.delay_until)
        return job

    async def add_repeatable(
        self,
        queue_name: str,
        name: str,
        payload: Any = None,
        *,
        cron: str | None = None,
        every: int | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> RepeatableJob:
        """
        Create or replace a repeatable job.

        The scheduler enqueues an ordinary job into ``queue_name`` at every
        run. Give exactly one schedule.

        Args:
            queue_name: Target queue.
            name: Identifies the repeatable job within the queue.
            payload: Payload of every run.
            cron: Five-field cron expression, evaluated in UTC.
            every: Fixed interval in milliseconds.
            priority: Priority of every run.
            max_attempts: Attempt budget of every run.

        Raises:
            InvalidJobOptionsError: For a missing, duplicate or invalid schedule.
        """
        now = self.store.clock()
        try:
            repeatable = RepeatableJob(
                queue_name=queue_name,
                name=name,
                payload=payload,
                cron=cron,
                every_ms=every,
                priority=priority,
                max_attempts=max_attempts,
                next_run_at=now,
                created_at=now,
            )
        except ValidationError as e:
            raise InvalidJobOptionsError(str(e)) from e
        repeatable.next_run_at = repeatable.next_after(now)

        stored = await self.store.upsert_repeatable(repeatable)
        logger.info(
            "Repeatable job added",
            extra={
                "queue": queue_name,
                "repeatable": name,
                "cron": cron,
                "every_ms": every,
                "next_run_at": stored.next_run_at.isoformat(),
            },
        )
        self._notify_scheduler(stored.next_run_at)
        return stored

    async def remove_repeatable(self, queue_name: str, name: str) -> None:
        """Stop a repeatable job. Runs already enqueued are not affected."""
        await self.admin.remove_repeatable(queue_name, name)

    async def list_repeatables(self, queue_name: str | None = None) -> list[RepeatableJob]:
        return await self.admin.list_repeatables(queue_name)

    # ------------------------------------------------------------------
    # Local coordination
    # ------------------------------------------------------------------

    def wake(self, queue_name: str) -> None:
        """Wake the local dispatcher of a queue, if any."""
        dispatcher = self._dispatchers.get(queue_name)
        if dispatcher is not None:
            dispatcher.wake()

    def wake_all(self) -> None:
        for dispatcher in self._dispatchers.values():
            dispatcher.wake()

    def cancel_local(self, job_id: str) -> bool:
        """Signal cancellation to a job running in this process."""
        return any(d.cancel(job_id) for d in self._dispatchers.values())

    def _handled_queues(self) -> list[str]:
        """Queues with a handler in this process."""
        return self.registry.queue_names()

    def _notify_scheduler(self, due: datetime | None) -> None:
        if self.scheduler is not None:
            self.scheduler.notify(due)

    def status(self) -> dict[str, Any]:
        """Describe the local engine for health endpoints."""
        return {
            "running": self._started,
            "worker_id": self.worker_id,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "scheduler": self.scheduler is not None,
            "queues": {
                name: {
                    "running": dispatcher.running,
                    "in_flight": len(dispatcher.in_flight),
                }
                for name, dispatcher in self._dispatchers.items()
            },
        }
