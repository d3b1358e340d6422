"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

from workqueue.api.auth import create_access_token
from workqueue.api.main import create_app
from workqueue.config import Settings
from workqueue.db.connection import Database, get_test_engine
from workqueue.db.store import SqlJobStore
from workqueue.engine import QueueEngine
from workqueue.observability.events import EventEmitter
from workqueue.observability.metrics import MetricsCollector
from workqueue.retry import RetryPolicy
from workqueue.store.base import JobStore
from workqueue.store.memory import InMemoryJobStore
from workqueue.types.events import JobEvent

from tests.support import TEST_API_KEY, FakeClock

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> RetryPolicy:
    """Deterministic backoff: 1s, 2s, 4s ... capped at 60s."""
    return RetryPolicy(
        base_delay_ms=1000,
        max_delay_ms=60_000,
        jitter=0.0,
        default_max_attempts=3,
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Backoff short enough for real-time dispatcher tests."""
    return RetryPolicy(
        base_delay_ms=10,
        max_delay_ms=50,
        jitter=0.0,
        default_max_attempts=3,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def emitter(metrics: MetricsCollector) -> EventEmitter:
    return EventEmitter(metrics)


@pytest.fixture
def recorded_events(emitter: EventEmitter) -> list[JobEvent]:
    """Every event emitted through ``emitter``."""
    events: list[JobEvent] = []
    emitter.subscribe(events.append)
    return events


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        api_secret_key="test-secret-key",
        admin_api_keys=[TEST_API_KEY],
        log_level="DEBUG",
        log_format="console",
        worker_id="test-worker",
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.05,
        scheduler_interval_seconds=0.05,
        stale_job_timeout_seconds=60.0,
        shutdown_grace_period_seconds=1.0,
        retry_base_delay_ms=10,
        retry_max_delay_ms=50,
        retry_jitter=0.0,
        health_max_failed_jobs=2,
        health_max_waiting_jobs=5,
    )


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, clock: FakeClock, policy: RetryPolicy) -> AsyncGenerator[JobStore]:
    """Every job store implementation, on a fake clock."""
    if request.param == "memory":
        job_store: JobStore = InMemoryJobStore(policy=policy, clock=clock)
    else:
        job_store = SqlJobStore(
            Database(get_test_engine(TEST_DATABASE_URL)),
            policy=policy,
            clock=clock,
            create_schema=True,
        )
    await job_store.initialize()

    yield job_store

    await job_store.close()


@pytest_asyncio.fixture
async def sql_store(clock: FakeClock, policy: RetryPolicy) -> AsyncGenerator[SqlJobStore]:
    job_store = SqlJobStore(
        Database(get_test_engine(TEST_DATABASE_URL)),
        policy=policy,
        clock=clock,
        create_schema=True,
    )
    await job_store.initialize()

    yield job_store

    await job_store.close()


@pytest_asyncio.fixture
async def engine(
    test_settings: Settings,
    fast_policy: RetryPolicy,
    metrics: MetricsCollector,
    emitter: EventEmitter,
) -> AsyncGenerator[QueueEngine]:
    """An engine over an in-memory store on the real clock. Not started."""
    queue_engine = QueueEngine(
        store=InMemoryJobStore(policy=fast_policy),
        settings=test_settings,
        emitter=emitter,
        metrics=metrics,
    )

    yield queue_engine

    if queue_engine.started:
        await queue_engine.shutdown(grace_period=1.0)


@pytest_asyncio.fixture
async def app(engine: QueueEngine, test_settings: Settings) -> FastAPI:
    """Admin app over ``engine``; the engine lifecycle is driven by the tests."""
    return create_app(engine=engine, settings=test_settings, manage_engine=False)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(test_settings: Settings) -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token("test-operator", test_settings)
    return {
        "Authorization": f"Bearer {token}",
    }
