"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from workqueue.constants import (
    METRIC_API_REQUESTS,
    METRIC_JOB_DURATION,
    METRIC_JOB_EVENTS,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_PRUNED,
    METRIC_QUEUE_DEPTH,
    METRIC_STALE_RECOVERED,
)
from workqueue.types.job import QueueStats

# Process-wide collector; Prometheus registries reject duplicate metric names
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue engine.

    Collects metrics for:
    - Queue depth per state
    - Enqueues, claims and finished attempts
    - Job execution duration
    - Lifecycle events
    - Stale claim recovery
    - Retention pruning of finished jobs
    - Admin API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue and state",
            ["queue", "state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by dispatchers",
            ["queue", "worker_id"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of finished attempts by outcome",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.job_events = Counter(
            METRIC_JOB_EVENTS,
            "Total number of lifecycle events",
            ["queue", "event"],
            registry=self._registry,
        )

        self.stale_recovered = Counter(
            METRIC_STALE_RECOVERED,
            "Total number of stale active jobs recovered",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_pruned = Counter(
            METRIC_JOBS_PRUNED,
            "Total number of finished jobs removed by retention",
            ["queue", "state"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of admin API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_enqueued(self, queue: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(queue=queue).inc()

    def record_claimed(self, queue: str, worker_id: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(queue=queue, worker_id=worker_id).inc()

    def record_finished(self, queue: str, outcome: str, duration_seconds: float) -> None:
        """Record the end of an attempt."""
        self.jobs_finished.labels(queue=queue, outcome=outcome).inc()
        self.job_duration.labels(queue=queue, outcome=outcome).observe(duration_seconds)

    def record_event(self, queue: str, event: str) -> None:
        """Record a lifecycle event."""
        self.job_events.labels(queue=queue, event=event).inc()

    def record_stale_recovered(self, queue: str, count: int = 1) -> None:
        """Record recovered stale claims."""
        self.stale_recovered.labels(queue=queue).inc(count)

    def record_pruned(self, queue: str, state: str, count: int) -> None:
        """Record finished jobs removed by retention."""
        self.jobs_pruned.labels(queue=queue, state=state).inc(count)

    def update_queue_depth(self, stats: QueueStats) -> None:
        """Update depth gauges from a stats snapshot."""
        for state in ("waiting", "active", "delayed", "completed", "failed"):
            self.queue_depth.labels(queue=stats.name, state=state).set(getattr(stats, state))

    def record_api_request(self, method: str, endpoint: str, status: int) -> None:
        """Record an admin API request."""
        self.api_requests.labels(method=method, endpoint=endpoint, status=str(status)).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
