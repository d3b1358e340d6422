"""
Per-queue dispatcher.

A dispatcher claims jobs of one queue from the job store, runs them through
the queue's handler as asyncio tasks, and reports the outcome back to the
store. The store's atomic claim is the only coordination between
dispatchers, so any number of them (in any number of processes) may serve
the same queue.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from workqueue.constants import SPAN_CLAIM_JOB, SPAN_EXECUTE_JOB, JobState
from workqueue.errors import PermanentJobError, PersistenceError
from workqueue.observability.events import EventEmitter
from workqueue.observability.logging import job_context
from workqueue.observability.metrics import MetricsCollector, get_metrics
from workqueue.observability.tracing import get_tracer
from workqueue.store.base import JobStore
from workqueue.types.events import JobEvent
from workqueue.types.job import Job, JobContext
from workqueue.worker.registry import HandlerSpec

logger = logging.getLogger(__name__)


@dataclass
class InFlightJob:
    """A claimed job executing in this process."""

    job: Job
    context: JobContext
    task: asyncio.Task
    started: float


def format_error(error: BaseException) -> str:
    """Render an exception for ``last_error``."""
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class QueueDispatcher:
    """
    Claims and executes jobs for a single queue.

    Features:
    - Claims only while a local slot is free; the store enforces the queue's
      global concurrency and rate limit
    - Waits on a wake event with a poll timeout instead of spinning
    - Heartbeats in-flight jobs so the scheduler does not treat them as stale,
      and records itself as a live consumer of the queue
    - Graceful shutdown with a bounded grace period
    """

    def __init__(
        self,
        store: JobStore,
        spec: HandlerSpec,
        emitter: EventEmitter,
        worker_id: str,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 10.0,
        metrics: MetricsCollector | None = None,
        on_delayed: Callable[[datetime | None], None] | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: The job store.
            spec: Handler registration for the queue.
            emitter: Lifecycle event emitter.
            worker_id: Identifier recorded on claimed jobs.
            poll_interval: Seconds to wait between claim attempts when idle.
            heartbeat_interval: Seconds between heartbeats of in-flight jobs.
            metrics: Metrics collector.
            on_delayed: Called with ``delay_until`` when a failed job is
                rescheduled, so the scheduler can wake early.
        """
        self.store = store
        self.spec = spec
        self.queue_name = spec.queue_name
        self.emitter = emitter
        self.worker_id = worker_id
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self._metrics = metrics or get_metrics()
        self._on_delayed = on_delayed

        self._wake = asyncio.Event()
        self._running = False
        self._in_flight: dict[str, InFlightJob] = {}
        self._abandoned: set[str] = set()
        self._loop_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> list[str]:
        """Ids of jobs currently executing in this dispatcher."""
        return list(self._in_flight.keys())

    async def start(self) -> None:
        """Start the claim loop and the heartbeat loop."""
        if self._running:
            return
        logger.info(
            "Dispatcher starting",
            extra={"queue": self.queue_name, "worker_id": self.worker_id},
        )
        self._running = True
        self._loop_task = asyncio.create_task(
            self._run(), name=f"dispatcher:{self.queue_name}"
        )
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"heartbeat:{self.queue_name}"
        )

    def wake(self) -> None:
        """Wake the claim loop (new job, queue resumed, slot released)."""
        self._wake.set()

    async def stop(self, grace_period: float = 30.0) -> list[str]:
        """
        Stop claiming and drain in-flight jobs.

        Jobs still running after ``grace_period`` seconds get their
        cancellation event set and are abandoned: they stay ``active`` in the
        store until the stale sweep recovers them.

        Args:
            grace_period: Seconds to wait for in-flight jobs.

        Returns:
            Ids of abandoned jobs.
        """
        logger.info("Dispatcher stopping", extra={"queue": self.queue_name})
        self._running = False
        self._wake.set()

        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        abandoned: list[str] = []
        pending = [entry.task for entry in self._in_flight.values()]
        if pending:
            logger.info(
                f"Waiting for {len(pending)} jobs to complete",
                extra={"queue": self.queue_name},
            )
            await asyncio.wait(pending, timeout=grace_period)
            for job_id, entry in list(self._in_flight.items()):
                if entry.task.done():
                    continue
                entry.context.cancel_event.set()
                self._abandoned.add(job_id)
                abandoned.append(job_id)
            if abandoned:
                logger.warning(
                    f"Abandoned {len(abandoned)} jobs after grace period",
                    extra={"queue": self.queue_name, "job_ids": abandoned},
                )

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

        logger.info("Dispatcher stopped", extra={"queue": self.queue_name})
        return abandoned

    def cancel(self, job_id: str) -> bool:
        """
        Signal cooperative cancellation to a job running here.

        Returns:
            True if the job was in flight in this dispatcher.
        """
        entry = self._in_flight.get(job_id)
        if entry is None:
            return False
        entry.context.cancel_event.set()
        return True

    # ------------------------------------------------------------------
    # Claim loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while self._running:
            self._wake.clear()
            wait = self.poll_interval
            try:
                hint = await self._fill_slots()
                if hint is not None:
                    wait = min(wait, hint)
            except PersistenceError as e:
                logger.warning(
                    f"Job store unavailable: {e}",
                    extra={"queue": self.queue_name},
                )
            except Exception as e:
                logger.exception(
                    f"Error in dispatcher loop: {e}",
                    extra={"queue": self.queue_name, "worker_id": self.worker_id},
                )

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    async def _fill_slots(self) -> float | None:
        """
        Claim jobs until local slots or claimable jobs run out.

        Returns:
            Seconds until the queue's rate-limit window reopens, if that is
            what stopped claiming.
        """
        config = await self.store.get_queue(self.queue_name)
        if config is None or config.is_paused:
            return None

        while self._running and len(self._in_flight) < config.concurrency:
            with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
                span.set_attribute("queue", self.queue_name)
                span.set_attribute("worker_id", self.worker_id)
                job = await self.store.claim_next(self.queue_name, self.worker_id)
                span.set_attribute("claimed", job is not None)
                if job is not None:
                    span.set_attribute("job_id", job.id)

            if job is None:
                if not config.has_rate_limit:
                    return None
                current = await self.store.get_queue(self.queue_name)
                return current.window_reset_in(self.store.clock()) if current else None

            self._launch(job)
        return None

    def _launch(self, job: Job) -> None:
        context = JobContext(
            job_id=job.id,
            queue_name=job.queue_name,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            created_at=job.created_at,
            worker_id=self.worker_id,
        )

        async def report_progress(progress: Any) -> None:
            await self.emitter.emit(JobEvent.progress(job, progress))

        context._progress = report_progress

        task = asyncio.create_task(self._execute(job, context), name=f"job:{job.id}")
        self._in_flight[job.id] = InFlightJob(
            job=job, context=context, task=task, started=time.monotonic()
        )
        self._metrics.record_claimed(self.queue_name, self.worker_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _invoke(self, payload: Any, context: JobContext) -> Any:
        if self.spec.is_async:
            return await self.spec.handler(payload, context)
        result = await asyncio.to_thread(self.spec.handler, payload, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _execute(self, job: Job, context: JobContext) -> None:
        """
        Execute a claimed job and record the outcome.

        Handler exceptions are converted into failed attempts; nothing raised
        by the handler escapes this method. Log records emitted while the job
        runs, handler logs included, carry its job_id, queue and worker_id.
        """
        with job_context(job, self.worker_id):
            start_time = time.monotonic()
            try:
                await self.emitter.emit(JobEvent.active(job, self.worker_id))

                logger.info(
                    "Executing job",
                    extra={
                        "job_id": job.id,
                        "queue": self.queue_name,
                        "attempt": job.attempts,
                    },
                )

                error: BaseException | None = None
                result: Any = None
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job_id", job.id)
                    span.set_attribute("queue", self.queue_name)
                    span.set_attribute("attempt", job.attempts)
                    try:
                        result = await self._invoke(job.payload, context)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        error = e
                        span.record_exception(e)

                duration = time.monotonic() - start_time
                if job.id in self._abandoned:
                    logger.warning(
                        "Abandoned job finished after shutdown; outcome not recorded",
                        extra={"job_id": job.id, "queue": self.queue_name},
                    )
                    return

                if error is None:
                    await self._complete(job, result, duration)
                else:
                    await self._fail(job, error, duration)

            except PersistenceError as e:
                logger.error(
                    f"Failed to record job outcome: {e}",
                    extra={"job_id": job.id, "queue": self.queue_name},
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "Exception executing job",
                    extra={"job_id": job.id, "queue": self.queue_name, "error": str(e)},
                )
            finally:
                self._in_flight.pop(job.id, None)
                self._abandoned.discard(job.id)
                self._wake.set()

    async def _complete(self, job: Job, result: Any, duration: float) -> None:
        finished = await self.store.mark_completed(job.id, job.lease_token or "", result)
        if finished is None:
            logger.warning(
                "Completion ignored - claim no longer valid",
                extra={"job_id": job.id, "queue": self.queue_name},
            )
            return

        logger.info(
            "Job completed successfully",
            extra={
                "job_id": job.id,
                "queue": self.queue_name,
                "duration": f"{duration:.2f}s",
            },
        )
        self._metrics.record_finished(self.queue_name, JobState.COMPLETED.value, duration)
        await self.emitter.emit(JobEvent.completed(finished, duration))

    async def _fail(self, job: Job, error: BaseException, duration: float) -> None:
        retryable = not isinstance(error, PermanentJobError)
        message = format_error(error)

        updated = await self.store.mark_failed(
            job.id, job.lease_token or "", message, retryable=retryable
        )
        if updated is None:
            logger.warning(
                "Failure ignored - claim no longer valid",
                extra={"job_id": job.id, "queue": self.queue_name, "error": message},
            )
            return

        if updated.state == JobState.FAILED:
            logger.warning(
                "Job failed permanently",
                extra={
                    "job_id": job.id,
                    "queue": self.queue_name,
                    "error": message,
                    "attempt": updated.attempts,
                    "retryable": retryable,
                },
            )
            self._metrics.record_finished(self.queue_name, JobState.FAILED.value, duration)
            await self.emitter.emit(JobEvent.failed(updated))
            return

        logger.warning(
            "Job failed, retry scheduled",
            extra={
                "job_id": job.id,
                "queue": self.queue_name,
                "error": message,
                "attempt": updated.attempts,
                "delay_until": updated.delay_until.isoformat() if updated.delay_until else None,
            },
        )
        self._metrics.record_finished(self.queue_name, "retried", duration)
        await self.emitter.emit(JobEvent.retry_scheduled(updated))
        if updated.state == JobState.DELAYED and self._on_delayed is not None:
            self._on_delayed(updated.delay_until)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        """
        Periodically refresh ``heartbeat_at`` of in-flight jobs.

        This prevents jobs from being recovered by the stale sweep while
        they're still being executed. The first beat happens at startup so
        the queue is marked as consumed right away.
        """
        while True:
            try:
                await self.beat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(
                    f"Error in heartbeat loop: {e}",
                    extra={"queue": self.queue_name},
                )
            try:
                await asyncio.sleep(self.heartbeat_interval)
            except asyncio.CancelledError:
                break

    async def beat(self) -> int:
        """Record this consumer and send one heartbeat for every in-flight job."""
        await self.store.record_consumer(self.queue_name)
        job_ids = [
            job_id for job_id in self._in_flight if job_id not in self._abandoned
        ]
        if not job_ids:
            return 0
        refreshed = await self.store.heartbeat(job_ids, self.worker_id)
        logger.debug(
            "Heartbeat sent",
            extra={"queue": self.queue_name, "jobs": len(job_ids), "refreshed": refreshed},
        )
        return refreshed
