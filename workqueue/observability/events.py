"""
Lifecycle event emitter.

Dispatchers, the scheduler and the admin service publish ``JobEvent``
instances here. Subscribers are notified in registration order; a failing
subscriber is logged and skipped so observers can never disturb job
processing.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from workqueue.constants import EventType
from workqueue.observability.metrics import MetricsCollector, get_metrics
from workqueue.types.events import JobEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[JobEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    """A registered callback, optionally filtered to one event type."""

    callback: EventCallback
    event_type: EventType | None = None

    def matches(self, event: JobEvent) -> bool:
        return self.event_type is None or self.event_type == event.event_type


class EventEmitter:
    """Fan-out of job lifecycle events to subscribers and metrics."""

    def __init__(self, metrics: MetricsCollector | None = None):
        self._metrics = metrics or get_metrics()
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        callback: EventCallback,
        event_type: EventType | None = None,
    ) -> Callable[[], None]:
        """
        Register a callback for all events or a single event type.

        Args:
            callback: Sync or async callable receiving the event.
            event_type: Only deliver events of this type when given.

        Returns:
            A function that removes the subscription.
        """
        subscription = Subscription(callback=callback, event_type=event_type)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def on(self, event_type: EventType | None = None) -> Callable[[EventCallback], EventCallback]:
        """
        Decorator form of ``subscribe``.

        Example:
            @emitter.on(EventType.FAILED)
            async def alert(event: JobEvent) -> None:
                ...
        """

        def decorator(callback: EventCallback) -> EventCallback:
            self.subscribe(callback, event_type)
            return callback

        return decorator

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def emit(self, event: JobEvent) -> None:
        """
        Publish an event. Never raises.

        Args:
            event: The event to publish.
        """
        try:
            self._metrics.record_event(event.queue_name, event.event_type.value)
        except Exception:
            logger.exception("Failed to record event metric")

        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                outcome: Any = subscription.callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={
                        "event": event.event_type.value,
                        "queue": event.queue_name,
                        "job_id": event.job_id,
                    },
                )
