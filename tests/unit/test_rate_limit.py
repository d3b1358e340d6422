"""
Unit tests for the queue-wide claim window.
"""

from datetime import datetime, timedelta

from workqueue.types.job import QueueConfig

NOW = datetime(2026, 1, 1, 12, 0, 0)


def limited(**kwargs) -> QueueConfig:
    return QueueConfig(
        name="q", concurrency=10, rate_limit_max=2, rate_limit_window_ms=1000, **kwargs
    )


class TestClaimWindow:
    """Tests for QueueConfig claim bookkeeping."""

    def test_unlimited_queue_is_never_exhausted(self):
        config = QueueConfig(name="q", concurrency=1, window_claims=1_000)

        assert config.has_rate_limit is False
        assert config.claims_exhausted(NOW) is False
        assert config.window_reset_in(NOW) is None

    def test_first_claim_opens_window(self):
        config = limited().after_claim(NOW)

        assert config.window_started_at == NOW
        assert config.window_claims == 1
        assert config.consumer_seen_at == NOW
        assert config.claims_exhausted(NOW) is False

    def test_exhausted_after_max_claims(self):
        config = limited().after_claim(NOW).after_claim(NOW + timedelta(milliseconds=100))

        assert config.window_claims == 2
        assert config.claims_exhausted(NOW + timedelta(milliseconds=200)) is True
        assert config.window_reset_in(NOW + timedelta(milliseconds=200)) == 0.8

    def test_window_reopens_after_window_ms(self):
        config = limited().after_claim(NOW).after_claim(NOW)
        later = NOW + timedelta(milliseconds=1000)

        assert config.claims_exhausted(later) is False
        assert config.window_reset_in(later) is None

        reopened = config.after_claim(later)
        assert reopened.window_started_at == later
        assert reopened.window_claims == 1

    def test_claim_on_unlimited_queue_only_records_consumer(self):
        config = QueueConfig(name="q", concurrency=1).after_claim(NOW)

        assert config.window_started_at is None
        assert config.window_claims == 0
        assert config.consumer_seen_at == NOW

    def test_retention_and_backoff_views(self):
        config = QueueConfig(
            name="q",
            concurrency=1,
            backoff_type="fixed",
            backoff_delay_ms=500,
            keep_completed_count=10,
        )

        assert config.backoff is not None
        assert config.backoff.delay_ms == 500
        assert config.retention is not None
        assert config.retention.completed_count == 10
        assert QueueConfig(name="q", concurrency=1).retention is None
        assert QueueConfig(name="q", concurrency=1).backoff is None
