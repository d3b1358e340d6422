"""
Integration tests for the scheduler.
"""

import asyncio
from datetime import timedelta

import pytest

from workqueue.constants import STALLED_ERROR, EventType, JobState
from workqueue.observability.events import EventEmitter
from workqueue.observability.metrics import MetricsCollector
from workqueue.retry import RetryPolicy
from workqueue.scheduler import Scheduler, SweepResult
from workqueue.store.base import JobStore
from workqueue.store.memory import InMemoryJobStore
from workqueue.types.events import JobEvent
from workqueue.types.job import Job, JobOptions, QueueConfig, RepeatableJob, Retention

from tests.support import FakeClock, wait_for

QUEUE = "reports"


@pytest.fixture
def woken() -> list[bool]:
    return []


@pytest.fixture
def scheduler(
    store: JobStore,
    emitter: EventEmitter,
    metrics: MetricsCollector,
    woken: list[bool],
) -> Scheduler:
    return Scheduler(
        store,
        emitter,
        interval_seconds=5.0,
        stale_job_timeout_seconds=60.0,
        metrics=metrics,
        on_promoted=lambda: woken.append(True),
    )


async def finish(store: JobStore, ok: bool = True) -> Job:
    """Run a fresh job to completion, or to failure when ``ok`` is False."""
    await store.enqueue(QUEUE, {}, JobOptions(max_attempts=1))
    claimed = await store.claim_next(QUEUE, "w1")
    if ok:
        return await store.mark_completed(claimed.id, claimed.lease_token, None)
    return await store.mark_failed(claimed.id, claimed.lease_token, "boom")


class TestPromotion:
    """Tests for delayed job promotion."""

    @pytest.mark.asyncio
    async def test_delay_respected(
        self, store: JobStore, scheduler: Scheduler, clock: FakeClock, woken: list[bool]
    ):
        """A delayed job is claimable only after its delay has elapsed."""
        job = await store.enqueue(QUEUE, {}, JobOptions(delay=60_000))
        assert job.state == JobState.DELAYED

        clock.advance(seconds=30)
        assert await scheduler.run_once() == SweepResult()
        assert await store.claim_next(QUEUE, "w1") is None
        assert woken == []

        clock.advance(seconds=30, ms=1)
        assert await scheduler.run_once() == SweepResult(promoted=1)
        assert woken == [True]

        claimed = await store.claim_next(QUEUE, "w1")
        assert claimed is not None and claimed.id == job.id

    @pytest.mark.asyncio
    async def test_only_due_jobs_promoted(
        self, store: JobStore, scheduler: Scheduler, clock: FakeClock
    ):
        soon = await store.enqueue(QUEUE, {}, JobOptions(delay=1_000))
        later = await store.enqueue(QUEUE, {}, JobOptions(delay=120_000))

        clock.advance(seconds=2)
        result = await scheduler.run_once()

        assert result.promoted == 1
        assert (await store.get_by_id(soon.id)).state == JobState.WAITING
        assert (await store.get_by_id(later.id)).state == JobState.DELAYED


class TestStaleRecovery:
    """Tests for recovery of jobs whose dispatcher stopped heartbeating."""

    @pytest.mark.asyncio
    async def test_stale_job_rescheduled(
        self,
        store: JobStore,
        scheduler: Scheduler,
        clock: FakeClock,
        recorded_events: list[JobEvent],
        metrics: MetricsCollector,
        woken: list[bool],
    ):
        await store.enqueue(QUEUE, {})
        claimed = await store.claim_next(QUEUE, "crashed-worker")
        clock.advance(seconds=61)

        result = await scheduler.run_once()

        assert result == SweepResult(recovered=1)
        job = await store.get_by_id(claimed.id)
        assert job.state == JobState.DELAYED
        assert job.last_error == STALLED_ERROR
        assert [e.event_type for e in recorded_events] == [
            EventType.STALLED,
            EventType.RETRY_SCHEDULED,
        ]
        assert woken == []
        assert (
            metrics.registry.get_sample_value(
                "workqueue_stale_recovered_total", {"queue": QUEUE}
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_stale_job_out_of_attempts_fails(
        self,
        store: JobStore,
        scheduler: Scheduler,
        clock: FakeClock,
        recorded_events: list[JobEvent],
    ):
        await store.enqueue(QUEUE, {}, JobOptions(max_attempts=1))
        await store.claim_next(QUEUE, "crashed-worker")
        clock.advance(seconds=90)

        [job] = await scheduler.recover_stale()

        assert job.state == JobState.FAILED
        assert [e.event_type for e in recorded_events] == [
            EventType.STALLED,
            EventType.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_live_job_untouched(
        self, store: JobStore, scheduler: Scheduler, clock: FakeClock
    ):
        await store.enqueue(QUEUE, {})
        claimed = await store.claim_next(QUEUE, "w1")
        clock.advance(seconds=45)
        await store.heartbeat([claimed.id], "w1")
        clock.advance(seconds=45)

        assert await scheduler.recover_stale() == []
        assert (await store.get_by_id(claimed.id)).state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_stale_recovery_with_zero_backoff_wakes_dispatchers(
        self, clock: FakeClock, emitter: EventEmitter, metrics: MetricsCollector
    ):
        store = InMemoryJobStore(
            policy=RetryPolicy(base_delay_ms=0, max_delay_ms=0, jitter=0.0),
            clock=clock,
        )
        woken = []
        scheduler = Scheduler(store, emitter, metrics=metrics, on_promoted=lambda: woken.append(1))
        await store.enqueue(QUEUE, {})
        claimed = await store.claim_next(QUEUE, "w1")
        clock.advance(seconds=120)

        await scheduler.run_once()

        assert (await store.get_by_id(claimed.id)).state == JobState.WAITING
        assert woken == [1]


class TestSchedulerLoop:
    """Tests for the background loop on the real clock."""

    @pytest.mark.asyncio
    async def test_notify_wakes_before_interval(self, emitter: EventEmitter, metrics: MetricsCollector):
        store = InMemoryJobStore()
        scheduler = Scheduler(store, emitter, interval_seconds=30.0, metrics=metrics)
        await scheduler.start()
        try:
            await asyncio.sleep(0.05)
            job = await store.enqueue(QUEUE, {}, JobOptions(delay=100))
            scheduler.notify(job.delay_until)

            async def promoted() -> bool:
                return (await store.get_by_id(job.id)).state == JobState.WAITING

            await wait_for(promoted, timeout=2.0)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_later_due_time_does_not_wake(self, emitter: EventEmitter, metrics: MetricsCollector):
        store = InMemoryJobStore()
        scheduler = Scheduler(store, emitter, interval_seconds=30.0, metrics=metrics)
        first = await store.enqueue(QUEUE, {}, JobOptions(delay=60_000))
        await scheduler.start()
        try:
            await asyncio.sleep(0.05)
            scheduler.notify(first.delay_until + timedelta(seconds=10))

            assert not scheduler._wake.is_set()
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_is_prompt(self, emitter: EventEmitter, metrics: MetricsCollector):
        scheduler = Scheduler(InMemoryJobStore(), emitter, interval_seconds=60.0, metrics=metrics)
        await scheduler.start()
        await asyncio.sleep(0.02)

        await asyncio.wait_for(scheduler.stop(), timeout=1.0)


class TestRetention:
    """Tests for automatic removal of finished jobs."""

    @pytest.mark.asyncio
    async def test_queue_retention_by_age(
        self, store: JobStore, scheduler: Scheduler, clock: FakeClock, metrics: MetricsCollector
    ):
        await store.upsert_queue(
            QueueConfig(name=QUEUE, concurrency=5, keep_completed_ms=60_000, keep_failed_ms=120_000)
        )
        old_done = await finish(store)
        old_failed = await finish(store, ok=False)
        clock.advance(seconds=90)
        fresh = await finish(store)

        assert await scheduler.apply_retention() == 1
        assert await store.get_by_id(old_done.id) is None
        assert await store.get_by_id(old_failed.id) is not None
        assert await store.get_by_id(fresh.id) is not None

        clock.advance(seconds=31)
        assert await scheduler.apply_retention() == 1
        assert await store.get_by_id(old_failed.id) is None
        assert (
            metrics.registry.get_sample_value(
                "workqueue_jobs_pruned_total", {"queue": QUEUE, "state": "failed"}
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_queue_retention_by_count(
        self, store: JobStore, scheduler: Scheduler, clock: FakeClock
    ):
        await store.upsert_queue(QueueConfig(name=QUEUE, concurrency=5, keep_completed_count=2))
        done = []
        for _ in range(4):
            clock.advance(seconds=1)
            done.append(await finish(store))

        assert await scheduler.apply_retention() == 2
        jobs, total = await store.list_by_state(QUEUE, JobState.COMPLETED)
        assert total == 2
        assert {job.id for job in jobs} == {done[2].id, done[3].id}

    @pytest.mark.asyncio
    async def test_default_retention_applies_to_plain_queues(
        self, store: JobStore, emitter: EventEmitter, metrics: MetricsCollector, clock: FakeClock
    ):
        scheduler = Scheduler(
            store,
            emitter,
            metrics=metrics,
            default_retention=Retention(completed_age_ms=1_000),
        )
        await store.upsert_queue(QueueConfig(name=QUEUE, concurrency=5))
        done = await finish(store)
        failed = await finish(store, ok=False)
        clock.advance(seconds=2)

        assert await scheduler.apply_retention() == 1
        assert await store.get_by_id(done.id) is None
        assert await store.get_by_id(failed.id) is not None

    @pytest.mark.asyncio
    async def test_without_retention_jobs_are_kept(
        self, store: JobStore, scheduler: Scheduler, clock: FakeClock
    ):
        await store.upsert_queue(QueueConfig(name=QUEUE, concurrency=5))
        done = await finish(store)
        clock.advance(seconds=30 * 24 * 3600)

        assert await scheduler.apply_retention() == 0
        assert await store.get_by_id(done.id) is not None

    @pytest.mark.asyncio
    async def test_run_once_applies_retention_once_per_interval(
        self, store: JobStore, emitter: EventEmitter, metrics: MetricsCollector, clock: FakeClock
    ):
        scheduler = Scheduler(
            store,
            emitter,
            metrics=metrics,
            default_retention=Retention(completed_age_ms=0),
            retention_interval_seconds=60.0,
        )
        await store.upsert_queue(QueueConfig(name=QUEUE, concurrency=5))
        assert await scheduler.run_once() == SweepResult()

        await finish(store)
        clock.advance(seconds=30)
        assert (await scheduler.run_once()).pruned == 0

        clock.advance(seconds=30)
        assert await scheduler.run_once() == SweepResult(pruned=1)


class TestRepeatableRuns:
    """Tests for enqueueing repeatable jobs."""

    @pytest.mark.asyncio
    async def test_due_repeatable_enqueued_and_wakes(
        self,
        store: JobStore,
        scheduler: Scheduler,
        clock: FakeClock,
        recorded_events: list[JobEvent],
        woken: list[bool],
    ):
        await store.upsert_repeatable(
            RepeatableJob(
                queue_name=QUEUE,
                name="digest",
                payload={"kind": "digest"},
                every_ms=60_000,
                next_run_at=clock.now + timedelta(minutes=1),
                created_at=clock.now,
            )
        )

        assert (await scheduler.run_once()).repeated == 0
        clock.advance(seconds=60)

        assert (await scheduler.run_once()).repeated == 1
        assert woken == [True]
        assert [e.event_type for e in recorded_events] == [EventType.ENQUEUED]
        jobs, total = await store.list_by_state(QUEUE, JobState.WAITING)
        assert total == 1 and jobs[0].payload == {"kind": "digest"}
        [stored] = await store.list_repeatables(QUEUE)
        assert stored.next_run_at == clock.now + timedelta(minutes=1)
