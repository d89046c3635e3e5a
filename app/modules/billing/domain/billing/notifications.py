"""
Best-effort domain notifications emitted after a webhook commits.

Delivery is at-most-once: listeners run after the transaction is already
durable and a failing listener is logged, counted and discarded. Nothing
here can fail a webhook response or roll back state.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Union

import structlog

from app.shared.core.exceptions import NotificationEmissionError
from app.shared.core.ops_metrics import NOTIFICATION_FAILURES_TOTAL

logger = structlog.get_logger()

CUSTOMER_CREATED = "billing:customer_created"
SUBSCRIPTION_CREATED = "billing:subscription_created"
SUBSCRIPTION_UPDATED = "billing:subscription_updated"
SUBSCRIPTION_CANCELLED = "billing:subscription_cancelled"
PAYMENT_FAILED = "billing:payment_failed"
INVOICE_PAID = "billing:invoice_paid"

ALL_EVENTS = "*"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[DomainEvent], Union[None, Awaitable[None]]]


class DomainEventBus:
    """In-process callback list keyed by event name (`*` receives everything)."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        self._listeners[name].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[name]:
                self._listeners[name].remove(listener)

        return unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    def listeners_for(self, name: str) -> list[Listener]:
        return [*self._listeners.get(name, ()), *self._listeners.get(ALL_EVENTS, ())]

    async def publish(self, event: DomainEvent) -> int:
        """Run every listener for `event`. Returns how many failed."""
        failures = 0
        for listener in self.listeners_for(event.name):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                failures += 1
                error = (
                    exc
                    if isinstance(exc, NotificationEmissionError)
                    else NotificationEmissionError(event.name, str(exc))
                )
                NOTIFICATION_FAILURES_TOTAL.labels(event=event.name).inc()
                logger.warning(
                    "domain_notification_failed",
                    notification=event.name,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=error.message,
                    error_code=error.code,
                )
        return failures

    async def publish_all(self, events: Iterable[DomainEvent]) -> int:
        failures = 0
        for event in events:
            failures += await self.publish(event)
        return failures


event_bus = DomainEventBus()
