"""
Observability module.
Contains logging, metrics, tracing, lifecycle events and health evaluation.
"""

from workqueue.observability.events import EventEmitter
from workqueue.observability.health import (
    HealthIssue,
    HealthReport,
    HealthThresholds,
    evaluate_health,
)
from workqueue.observability.logging import job_context, setup_logging
from workqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from workqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "job_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "EventEmitter",
    "HealthIssue",
    "HealthReport",
    "HealthThresholds",
    "evaluate_health",
]
