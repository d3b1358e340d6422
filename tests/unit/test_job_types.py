"""
Unit tests for job option and schedule types.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from workqueue.config import Settings
from workqueue.constants import MAX_DELAY_MS, BackoffType
from workqueue.errors import InvalidJobOptionsError
from workqueue.types.job import (
    Backoff,
    JobOptions,
    RepeatableJob,
    Retention,
    next_occurrence,
)

NOW = datetime(2026, 1, 1, 12, 0, 0)


class TestJobOptions:
    """Tests for enqueue option validation."""

    def test_aware_run_at_becomes_naive_utc(self):
        run_at = datetime(2026, 1, 1, 9, 30, tzinfo=timezone(timedelta(hours=-5)))

        options = JobOptions(run_at=run_at)

        assert options.run_at == datetime(2026, 1, 1, 14, 30)
        assert options.run_at.tzinfo is None

    def test_naive_run_at_is_unchanged(self):
        assert JobOptions(run_at=NOW).run_at == NOW

    def test_delay_upper_bound(self):
        assert JobOptions(delay=MAX_DELAY_MS).delay == MAX_DELAY_MS
        with pytest.raises(ValidationError):
            JobOptions(delay=MAX_DELAY_MS + 1)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            JobOptions(delay=-1)


class TestBackoff:
    """Tests for per-queue backoff."""

    def test_type_from_string(self):
        assert Backoff("fixed", 100).type == BackoffType.FIXED

    @pytest.mark.parametrize("args", [("linear", 100), ("fixed", -1)])
    def test_invalid(self, args):
        with pytest.raises(InvalidJobOptionsError):
            Backoff(*args)


class TestRetention:
    """Tests for retention rules."""

    def test_from_settings(self):
        retention = Retention.from_settings(
            Settings(
                retention_completed_age_ms=1000,
                retention_completed_count=None,
                retention_failed_age_ms=2000,
            )
        )

        assert retention == Retention(completed_age_ms=1000, failed_age_ms=2000)
        assert retention.enabled is True
        assert Retention().enabled is False

    def test_negative_rejected(self):
        with pytest.raises(InvalidJobOptionsError):
            Retention(completed_count=-1)


class TestRepeatableJob:
    """Tests for repeatable job schedules."""

    def make(self, **kwargs) -> RepeatableJob:
        return RepeatableJob(queue_name="q", name="r", next_run_at=NOW, created_at=NOW, **kwargs)

    def test_requires_exactly_one_schedule(self):
        with pytest.raises(ValidationError):
            self.make()
        with pytest.raises(ValidationError):
            self.make(cron="* * * * *", every_ms=1000)

    def test_rejects_invalid_cron(self):
        with pytest.raises(ValidationError):
            self.make(cron="every tuesday")

    def test_cron_next_run(self):
        job = self.make(cron="0 * * * *")

        assert job.next_after(NOW) == datetime(2026, 1, 1, 13, 0)
        assert job.next_after(datetime(2026, 1, 1, 12, 30)) == datetime(2026, 1, 1, 13, 0)

    def test_interval_next_run(self):
        job = self.make(every_ms=90_000)

        assert job.next_after(NOW) == NOW + timedelta(seconds=90)

    def test_next_occurrence_without_schedule(self):
        with pytest.raises(InvalidJobOptionsError):
            next_occurrence(None, None, NOW)
