"""
Queue health evaluation.
"""

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from workqueue.config import Settings
from workqueue.types.job import QueueStats

ISSUE_FAILED = "failed_threshold"
ISSUE_WAITING = "waiting_threshold"
ISSUE_NO_HANDLER = "no_handler"


@dataclass(frozen=True)
class HealthThresholds:
    """
    Upper bounds per queue; a count strictly above a bound is unhealthy.

    ``consumer_timeout_seconds`` is how long a consumer heartbeat keeps a
    queue counted as consumed.
    """

    max_failed: int = 100
    max_waiting: int = 1000
    consumer_timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "HealthThresholds":
        return cls(
            max_failed=settings.health_max_failed_jobs,
            max_waiting=settings.health_max_waiting_jobs,
            consumer_timeout_seconds=settings.health_consumer_timeout_seconds,
        )


@dataclass(frozen=True)
class HealthIssue:
    queue: str
    kind: str
    value: int
    threshold: int | None
    message: str


@dataclass
class HealthReport:
    healthy: bool
    issues: list[HealthIssue] = field(default_factory=list)
    stats: list[QueueStats] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "unhealthy"


def _consumed(
    queue: QueueStats,
    handlers: Collection[str] | None,
    limits: HealthThresholds,
    now: datetime | None,
) -> bool:
    if handlers is not None and queue.name in handlers:
        return True
    if now is None or queue.consumer_seen_at is None:
        return False
    return now - queue.consumer_seen_at <= timedelta(seconds=limits.consumer_timeout_seconds)


def evaluate_health(
    stats: Iterable[QueueStats],
    thresholds: HealthThresholds,
    handlers: Collection[str] | None = None,
    overrides: Mapping[str, HealthThresholds] | None = None,
    now: datetime | None = None,
) -> HealthReport:
    """
    Compare queue counts against thresholds.

    Queues holding waiting jobs that are neither handled locally nor
    consumed elsewhere are reported as ``no_handler``. The check is skipped
    when neither ``handlers`` nor ``now`` is given.

    Args:
        stats: Per-queue counts.
        thresholds: Default thresholds.
        handlers: Queue names with a handler in this process.
        overrides: Per-queue thresholds replacing the defaults.
        now: Current time. When given, a queue whose ``consumer_seen_at``
            is within the consumer timeout counts as consumed.

    Returns:
        HealthReport listing every violation.
    """
    overrides = overrides or {}
    snapshot = list(stats)
    issues: list[HealthIssue] = []
    check_consumers = handlers is not None or now is not None

    for queue in snapshot:
        limits = overrides.get(queue.name, thresholds)
        if queue.failed > limits.max_failed:
            issues.append(
                HealthIssue(
                    queue=queue.name,
                    kind=ISSUE_FAILED,
                    value=queue.failed,
                    threshold=limits.max_failed,
                    message=f"{queue.failed} failed jobs exceed threshold {limits.max_failed}",
                )
            )
        if queue.waiting > limits.max_waiting:
            issues.append(
                HealthIssue(
                    queue=queue.name,
                    kind=ISSUE_WAITING,
                    value=queue.waiting,
                    threshold=limits.max_waiting,
                    message=f"{queue.waiting} waiting jobs exceed threshold {limits.max_waiting}",
                )
            )
        if check_consumers and queue.waiting > 0 and not _consumed(queue, handlers, limits, now):
            issues.append(
                HealthIssue(
                    queue=queue.name,
                    kind=ISSUE_NO_HANDLER,
                    value=queue.waiting,
                    threshold=None,
                    message=f"{queue.waiting} waiting jobs but no live consumer",
                )
            )

    return HealthReport(healthy=not issues, issues=issues, stats=snapshot)
