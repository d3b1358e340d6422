"""
Handler registry.

Maps each queue name to exactly one handler. The registry is populated at
startup and frozen once the engine starts dispatching; later registrations
are rejected rather than silently ignored.

Handlers must be idempotent - a job may be executed more than once when a
worker crashes after the handler ran but before completion was recorded.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from workqueue.constants import BackoffType
from workqueue.errors import HandlerRegistrationError, InvalidJobOptionsError
from workqueue.types.job import Backoff, JobContext, Retention

logger = logging.getLogger(__name__)

# Handler signature: handler(payload, context) -> result, sync or async
JobHandler = Callable[[Any, JobContext], Awaitable[Any] | Any]


@dataclass(frozen=True)
class RateLimit:
    """At most ``max`` claims per ``window_ms`` milliseconds."""

    max: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max < 1 or self.window_ms < 1:
            raise HandlerRegistrationError("rate limit max and window_ms must be positive")


@dataclass(frozen=True)
class HandlerSpec:
    """A registered handler and its queue defaults."""

    queue_name: str
    handler: JobHandler
    concurrency: int | None = None
    rate_limit: RateLimit | None = None
    max_attempts: int | None = None
    priority: int | None = None
    backoff: Backoff | None = None
    retention: Retention | None = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler) or inspect.iscoroutinefunction(
            getattr(self.handler, "__call__", None)
        )


class HandlerRegistry:
    """Queue name -> handler mapping."""

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerSpec] = {}
        self._frozen = False

    def register(
        self,
        queue_name: str,
        handler: JobHandler,
        concurrency: int | None = None,
        rate_limit: RateLimit | tuple[int, int] | None = None,
        max_attempts: int | None = None,
        priority: int | None = None,
        backoff: Backoff | tuple[BackoffType | str, int] | None = None,
        retention: Retention | None = None,
    ) -> HandlerSpec:
        """
        Register the handler for a queue.

        Args:
            queue_name: Queue the handler processes.
            handler: Callable taking ``(payload, context)``.
            concurrency: Default concurrency for the queue.
            rate_limit: ``RateLimit`` or ``(max, window_ms)`` tuple.
            max_attempts: Default attempt budget for the queue's jobs.
            priority: Default priority for the queue's jobs.
            backoff: ``Backoff`` or ``(type, delay_ms)`` tuple.
            retention: Automatic removal of the queue's finished jobs.

        Returns:
            The stored handler spec.

        Raises:
            HandlerRegistrationError: If the registry is frozen, the queue
                already has a handler, or the arguments are invalid.
        """
        if self._frozen:
            raise HandlerRegistrationError(
                f"Cannot register handler for '{queue_name}' after the engine started"
            )
        if not queue_name:
            raise HandlerRegistrationError("Queue name must not be empty")
        if queue_name in self._handlers:
            raise HandlerRegistrationError(f"Queue '{queue_name}' already has a handler")
        if not callable(handler):
            raise HandlerRegistrationError(f"Handler for '{queue_name}' is not callable")
        if concurrency is not None and concurrency < 1:
            raise HandlerRegistrationError("concurrency must be at least 1")
        if max_attempts is not None and max_attempts < 1:
            raise HandlerRegistrationError("max_attempts must be at least 1")
        if isinstance(rate_limit, tuple):
            rate_limit = RateLimit(*rate_limit)
        if isinstance(backoff, tuple):
            try:
                backoff = Backoff(*backoff)
            except InvalidJobOptionsError as e:
                raise HandlerRegistrationError(str(e)) from e

        spec = HandlerSpec(
            queue_name=queue_name,
            handler=handler,
            concurrency=concurrency,
            rate_limit=rate_limit,
            max_attempts=max_attempts,
            priority=priority,
            backoff=backoff,
            retention=retention,
        )
        self._handlers[queue_name] = spec
        logger.info(f"Registered handler for queue: {queue_name}")
        return spec

    def get(self, queue_name: str) -> HandlerSpec | None:
        """
        Get the handler spec for a queue.

        Args:
            queue_name: The queue name.

        Returns:
            The handler spec or None if not registered.
        """
        return self._handlers.get(queue_name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def queue_names(self) -> list[str]:
        """List all queues with a handler."""
        return list(self._handlers.keys())

    def __contains__(self, queue_name: object) -> bool:
        return queue_name in self._handlers

    def __iter__(self) -> Iterator[HandlerSpec]:
        return iter(list(self._handlers.values()))

    def __len__(self) -> int:
        return len(self._handlers)
