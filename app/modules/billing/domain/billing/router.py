"""Routes verified webhook envelopes to subscription state handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from app.modules.billing.domain.billing.events import (
    EventKind,
    ParsedEvent,
    WebhookEnvelope,
)
from app.modules.billing.domain.billing.security_context import BillingTransaction
from app.modules.billing.domain.billing.subscription_state import (
    SubscriptionStateMachine,
)

if TYPE_CHECKING:
    from app.modules.billing.domain.billing.providers.base import ProviderAdapter

logger = structlog.get_logger()

Handler = Callable[[SubscriptionStateMachine, BillingTransaction, Any], Awaitable[Any]]

HANDLERS: dict[EventKind, Handler] = {
    EventKind.CHECKOUT_COMPLETED: lambda m, tx, e: m.activate(tx, e),
    EventKind.SUBSCRIPTION_UPDATED: lambda m, tx, e: m.apply_update(tx, e),
    EventKind.SUBSCRIPTION_CANCELLED: lambda m, tx, e: m.cancel(tx, e),
    EventKind.PAYMENT_FAILED: lambda m, tx, e: m.record_payment_failed(tx, e),
    EventKind.PAYMENT_SUCCEEDED: lambda m, tx, e: m.record_payment_succeeded(tx, e),
}


class EventRouter:
    def __init__(
        self,
        adapter: "ProviderAdapter",
        machine: SubscriptionStateMachine | None = None,
    ):
        self.adapter = adapter
        self.machine = machine or SubscriptionStateMachine(adapter.name)

    async def dispatch(self, envelope: WebhookEnvelope, tx: BillingTransaction) -> bool:
        """
        Run the handler for `envelope` inside `tx`.

        Returns False when nothing was dispatched: unmapped event types and
        events the adapter deems non-actionable are acknowledged as-is.
        Payload validation happens here, so `MalformedPayloadError` is raised
        before any handler touches storage.
        """
        if envelope.kind is None:
            logger.info("webhook_event_unhandled")
            return False

        event: ParsedEvent | None = self.adapter.parse_event(envelope)
        if event is None:
            logger.info("webhook_event_not_actionable", kind=envelope.kind.value)
            return False

        handler = HANDLERS[event.kind]
        await handler(self.machine, tx, event)
        logger.info("webhook_event_dispatched", kind=event.kind.value)
        return True
