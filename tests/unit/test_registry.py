"""
Unit tests for the handler registry.
"""

import pytest

from workqueue.constants import BackoffType
from workqueue.errors import HandlerRegistrationError
from workqueue.types.job import Backoff, Retention
from workqueue.worker.registry import HandlerRegistry, RateLimit


async def async_handler(payload, context):
    return payload


def sync_handler(payload, context):
    return payload


class CallableHandler:
    async def __call__(self, payload, context):
        return payload


class TestRegister:
    """Tests for handler registration."""

    def test_register_and_get(self):
        registry = HandlerRegistry()

        spec = registry.register("mail", async_handler, concurrency=3)

        assert registry.get("mail") is spec
        assert spec.handler is async_handler
        assert spec.concurrency == 3
        assert "mail" in registry
        assert len(registry) == 1
        assert registry.queue_names() == ["mail"]

    def test_unknown_queue(self):
        assert HandlerRegistry().get("missing") is None

    def test_duplicate_registration_rejected(self):
        registry = HandlerRegistry()
        registry.register("mail", async_handler)

        with pytest.raises(HandlerRegistrationError):
            registry.register("mail", sync_handler)

        assert registry.get("mail").handler is async_handler

    def test_register_after_freeze_rejected(self):
        registry = HandlerRegistry()
        registry.freeze()

        with pytest.raises(HandlerRegistrationError):
            registry.register("mail", async_handler)

        assert registry.frozen
        assert len(registry) == 0

    @pytest.mark.parametrize(
        "queue_name,handler,concurrency",
        [
            ("", async_handler, None),
            ("mail", "not-callable", None),
            ("mail", async_handler, 0),
        ],
    )
    def test_invalid_arguments(self, queue_name, handler, concurrency):
        with pytest.raises(HandlerRegistrationError):
            HandlerRegistry().register(queue_name, handler, concurrency=concurrency)

    def test_rate_limit_tuple(self):
        spec = HandlerRegistry().register("mail", async_handler, rate_limit=(10, 1000))

        assert spec.rate_limit == RateLimit(max=10, window_ms=1000)

    def test_invalid_rate_limit(self):
        with pytest.raises(HandlerRegistrationError):
            RateLimit(max=0, window_ms=1000)
        with pytest.raises(HandlerRegistrationError):
            RateLimit(max=1, window_ms=0)

    def test_queue_job_defaults(self):
        retention = Retention(completed_count=100)

        spec = HandlerRegistry().register(
            "payments",
            async_handler,
            max_attempts=5,
            priority=2,
            backoff=("fixed", 30_000),
            retention=retention,
        )

        assert spec.max_attempts == 5
        assert spec.priority == 2
        assert spec.backoff == Backoff(BackoffType.FIXED, 30_000)
        assert spec.retention is retention

    @pytest.mark.parametrize(
        "kwargs", [{"max_attempts": 0}, {"backoff": ("linear", 100)}]
    )
    def test_invalid_job_defaults(self, kwargs):
        with pytest.raises(HandlerRegistrationError):
            HandlerRegistry().register("mail", async_handler, **kwargs)


class TestHandlerSpec:
    """Tests for handler kind detection."""

    def test_async_function(self):
        assert HandlerRegistry().register("a", async_handler).is_async is True

    def test_sync_function(self):
        assert HandlerRegistry().register("s", sync_handler).is_async is False

    def test_async_callable_object(self):
        assert HandlerRegistry().register("c", CallableHandler()).is_async is True

    def test_iteration(self):
        registry = HandlerRegistry()
        registry.register("a", async_handler)
        registry.register("b", sync_handler)

        assert [spec.queue_name for spec in registry] == ["a", "b"]
