"""
Unit tests for the retry and backoff policy.
"""

import random

import pytest

from workqueue.config import Settings
from workqueue.constants import BackoffType
from workqueue.retry import RetryPolicy
from workqueue.types.job import QueueConfig


class TestBackoff:
    """Tests for backoff delay computation."""

    def test_exponential_growth(self):
        """Delay doubles with every failed attempt."""
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=60_000, jitter=0.0)

        assert policy.backoff_ms(1) == 1000
        assert policy.backoff_ms(2) == 2000
        assert policy.backoff_ms(3) == 4000
        assert policy.backoff_ms(4) == 8000

    def test_capped_at_max_delay(self):
        """Delay never exceeds max_delay_ms."""
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=5000, jitter=0.0)

        assert policy.backoff_ms(3) == 4000
        assert policy.backoff_ms(4) == 5000
        assert policy.backoff_ms(30) == 5000

    def test_jitter_bounds(self):
        """Jitter only adds, by at most jitter * delay, and respects the cap."""
        policy = RetryPolicy(
            base_delay_ms=1000,
            max_delay_ms=60_000,
            jitter=0.5,
            rng=random.Random(42),
        )

        for _ in range(200):
            delay = policy.backoff_ms(2)
            assert 2000 <= delay <= 3000

    def test_jitter_never_exceeds_cap(self):
        policy = RetryPolicy(
            base_delay_ms=1000,
            max_delay_ms=4000,
            jitter=1.0,
            rng=random.Random(7),
        )

        for _ in range(200):
            assert policy.backoff_ms(3) <= 4000

    def test_zero_base_delay(self):
        """A zero base delay retries immediately."""
        policy = RetryPolicy(base_delay_ms=0, max_delay_ms=0, jitter=0.5)

        assert policy.backoff_ms(1) == 0

    def test_fixed_backoff(self):
        """Fixed backoff waits the same delay after every attempt."""
        policy = RetryPolicy(
            base_delay_ms=30_000, jitter=0.0, backoff_type=BackoffType.FIXED
        )

        assert [policy.backoff_ms(n) for n in (1, 2, 5)] == [30_000, 30_000, 30_000]


class TestDecide:
    """Tests for retry decisions."""

    def test_retry_while_attempts_remain(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter=0.0)

        decision = policy.decide(attempts=1, max_attempts=3)

        assert decision.retry is True
        assert decision.delay_ms == 1000

    def test_no_retry_when_exhausted(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter=0.0)

        decision = policy.decide(attempts=3, max_attempts=3)

        assert decision.retry is False
        assert decision.delay_ms == 0

    def test_single_attempt_budget(self):
        """max_attempts=1 never retries."""
        policy = RetryPolicy()

        assert policy.decide(attempts=1, max_attempts=1).retry is False


class TestValidation:
    """Tests for policy parameter validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_delay_ms": -1},
            {"max_delay_ms": -1},
            {"jitter": 1.5},
            {"jitter": -0.1},
            {"default_max_attempts": 0},
        ],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_from_settings(self):
        settings = Settings(
            retry_base_delay_ms=250,
            retry_max_delay_ms=10_000,
            retry_jitter=0.1,
            default_max_attempts=5,
        )

        policy = RetryPolicy.from_settings(settings)

        assert policy.base_delay_ms == 250
        assert policy.max_delay_ms == 10_000
        assert policy.jitter == 0.1
        assert policy.default_max_attempts == 5
        assert policy.backoff_type == BackoffType.EXPONENTIAL


class TestForQueue:
    """Tests for overlaying queue job defaults."""

    def test_queue_without_overrides_keeps_policy(self):
        policy = RetryPolicy()

        assert policy.for_queue(None) is policy
        assert policy.for_queue(QueueConfig(name="q", concurrency=1)) is policy

    def test_queue_backoff_and_attempts(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=60_000, jitter=0.0)
        config = QueueConfig(
            name="payments",
            concurrency=1,
            default_max_attempts=5,
            backoff_type=BackoffType.FIXED,
            backoff_delay_ms=30_000,
        )

        queue_policy = policy.for_queue(config)

        assert queue_policy.default_max_attempts == 5
        assert queue_policy.backoff_ms(3) == 30_000
        assert queue_policy.max_delay_ms == 60_000
        assert policy.backoff_ms(3) == 4000
