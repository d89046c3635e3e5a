"""Stripe webhook adapter."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from app.models.subscription import SubscriptionStatus
from app.modules.billing.domain.billing.events import (
    CheckoutCompleted,
    EventKind,
    PaymentFailed,
    PaymentSucceeded,
    PriceDetails,
    SubscriptionCancelled,
    SubscriptionChanged,
    WebhookEnvelope,
    dig,
    first_present,
    optional_str,
    parse_amount,
    parse_timestamp,
    require_str,
    require_tenant_id,
)
from app.modules.billing.domain.billing.providers.base import (
    BaseProviderAdapter,
    header,
)
from app.modules.billing.domain.billing.providers.signatures import (
    verify_stripe_signature,
)

SIGNATURE_HEADER = "Stripe-Signature"


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields hold either an id string or an expanded object."""
    if isinstance(value, Mapping):
        return optional_str(value.get("id"))
    return optional_str(value)


def _first_item(subscription: Any) -> Any:
    return dig(subscription, "items", "data", "0")


def _amount(value: Any) -> Any:
    # Stripe amounts are integer minor units.
    amount = parse_amount(value)
    return amount / 100 if amount is not None else None


class StripeAdapter(BaseProviderAdapter):
    name = "stripe"
    event_kinds = {
        "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
        "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
        "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELLED,
        "invoice.payment_failed": EventKind.PAYMENT_FAILED,
        "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    }
    status_map = {
        "active": SubscriptionStatus.ACTIVE,
        "trialing": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.ACTIVE,
        "unpaid": SubscriptionStatus.ACTIVE,
        "incomplete": SubscriptionStatus.ACTIVE,
        "canceled": SubscriptionStatus.CANCELLED,
        "incomplete_expired": SubscriptionStatus.CANCELLED,
        "paused": SubscriptionStatus.CANCELLED,
    }

    def verify_signature(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> bool:
        return verify_stripe_signature(
            payload,
            header(headers, SIGNATURE_HEADER),
            self._secret,
            self._now(now),
            self.tolerance_seconds,
        )

    def parse_envelope(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookEnvelope:
        body = self._load_json(payload)
        event_type = require_str(body.get("type"), "type")
        data = dig(body, "data", "object")
        return WebhookEnvelope(
            provider=self.name,
            event_id=require_str(body.get("id"), "id"),
            event_type=event_type,
            kind=self.translate_event_type(event_type),
            data=data if isinstance(data, Mapping) else {},
            raw=body,
        )

    def parse_checkout_completed(
        self, envelope: WebhookEnvelope
    ) -> Optional[CheckoutCompleted]:
        session = envelope.data
        if session.get("mode") == "payment":
            # One-off payments carry no subscription.
            return None

        tenant_id = require_tenant_id(
            first_present(session, ("metadata", "tenant_id"), ("client_reference_id",))
        )
        subscription = session.get("subscription")
        subscription_id = require_str(_object_id(subscription), "subscription")

        # The handler never calls Stripe; the price must arrive with the event,
        # either on an expanded subscription or in checkout metadata.
        item = _first_item(subscription)
        price_id = require_str(
            first_present(
                session,
                ("subscription", "items", "data", "0", "price", "id"),
                ("metadata", "price_id"),
            ),
            "price_id",
        )
        period_end = first_present(
            item, ("current_period_end",)
        ) or dig(subscription, "current_period_end")

        return CheckoutCompleted(
            tenant_id=tenant_id,
            provider_subscription_id=subscription_id,
            provider_price_id=price_id,
            provider_customer_id=_object_id(session.get("customer")),
            expires_at=parse_timestamp(period_end),
            price=PriceDetails(
                amount=_amount(session.get("amount_total")),
                currency=optional_str(session.get("currency")),
                interval=optional_str(dig(item, "price", "recurring", "interval")),
            ),
        )

    def parse_subscription_updated(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionChanged]:
        subscription = envelope.data
        item = _first_item(subscription)
        provider_status = require_str(subscription.get("status"), "status")
        return SubscriptionChanged(
            provider_subscription_id=require_str(subscription.get("id"), "id"),
            provider_status=provider_status,
            status=self.map_status(provider_status),
            expires_at=parse_timestamp(
                first_present(item, ("current_period_end",))
                or subscription.get("current_period_end")
            ),
            provider_price_id=optional_str(dig(item, "price", "id")),
            price=PriceDetails(
                amount=_amount(dig(item, "price", "unit_amount")),
                currency=optional_str(dig(item, "price", "currency")),
                interval=optional_str(dig(item, "price", "recurring", "interval")),
            ),
        )

    def parse_subscription_cancelled(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionCancelled]:
        return SubscriptionCancelled(
            provider_subscription_id=require_str(envelope.data.get("id"), "id")
        )

    def _invoice_subscription_id(self, invoice: Mapping[str, Any]) -> Optional[str]:
        return _object_id(invoice.get("subscription")) or optional_str(
            dig(invoice, "parent", "subscription_details", "subscription")
        )

    def parse_payment_failed(self, envelope: WebhookEnvelope) -> Optional[PaymentFailed]:
        invoice = envelope.data
        return PaymentFailed(
            provider_subscription_id=self._invoice_subscription_id(invoice),
            invoice_id=optional_str(invoice.get("id")),
        )

    def parse_payment_succeeded(
        self, envelope: WebhookEnvelope
    ) -> Optional[PaymentSucceeded]:
        invoice = envelope.data
        return PaymentSucceeded(
            provider_subscription_id=self._invoice_subscription_id(invoice),
            invoice_id=optional_str(invoice.get("id")),
            expires_at=parse_timestamp(dig(invoice, "lines", "data", "0", "period", "end")),
            amount_paid=_amount(invoice.get("amount_paid")),
            currency=optional_str(invoice.get("currency")),
        )
