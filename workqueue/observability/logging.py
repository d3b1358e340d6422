"""
Structured logging for the engine.

Modules log through the standard library, ``logging.getLogger(__name__)``
with ``extra={...}`` fields, and structlog renders every record. Fields
bound with ``structlog.contextvars`` are merged into each record, which is
how dispatchers tag everything logged while a job runs.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog
from opentelemetry import trace

from workqueue.config import Settings, get_settings
from workqueue.types.job import Job

# Libraries that log too much at INFO
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite")


@contextmanager
def job_context(job: Job, worker_id: str) -> Iterator[None]:
    """
    Bind a job's identity to every log record emitted inside the block.

    Bindings live in context variables, so concurrent jobs on one event loop
    never see each other's fields, and sync handlers running in a worker
    thread inherit them.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=job.id,
        queue=job.queue_name,
        worker_id=worker_id,
        attempt=job.attempts,
    ):
        yield


def _add_span_ids(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def setup_logging(settings: Settings | None = None, stream: TextIO | None = None) -> None:
    """
    Route all standard library logging through structlog.

    Args:
        settings: Source of ``log_level`` and ``log_format`` (json or console).
        stream: Output stream, stdout by default.
    """
    settings = settings or get_settings()

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_span_ids,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]
    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream is None)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
