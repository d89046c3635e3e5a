"""Paddle Billing webhook adapter."""

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
    verify_paddle_signature,
)

SIGNATURE_HEADER = "Paddle-Signature"

# Renewal charges also arrive as transaction.completed.
RECURRING_ORIGINS = {"subscription_recurring"}


def _price_details(price: Any, currency: Any = None) -> PriceDetails:
    amount = parse_amount(dig(price, "unit_price", "amount"))
    return PriceDetails(
        amount=amount / 100 if amount is not None else None,
        currency=optional_str(dig(price, "unit_price", "currency_code") or currency),
        interval=optional_str(dig(price, "billing_cycle", "interval")),
    )


class PaddleAdapter(BaseProviderAdapter):
    name = "paddle"
    event_kinds = {
        "transaction.completed": EventKind.CHECKOUT_COMPLETED,
        "subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
        "subscription.canceled": EventKind.SUBSCRIPTION_CANCELLED,
        "transaction.payment_failed": EventKind.PAYMENT_FAILED,
    }
    status_map = {
        "active": SubscriptionStatus.ACTIVE,
        "trialing": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.ACTIVE,
        "canceled": SubscriptionStatus.CANCELLED,
        "paused": SubscriptionStatus.CANCELLED,
    }

    def verify_signature(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> bool:
        return verify_paddle_signature(
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
        event_type = require_str(body.get("event_type"), "event_type")
        data = body.get("data") if isinstance(body.get("data"), Mapping) else {}
        kind = self.translate_event_type(event_type)
        if kind is EventKind.CHECKOUT_COMPLETED and data.get("origin") in RECURRING_ORIGINS:
            kind = EventKind.PAYMENT_SUCCEEDED
        return WebhookEnvelope(
            provider=self.name,
            event_id=require_str(body.get("event_id"), "event_id"),
            event_type=event_type,
            kind=kind,
            data=data,
            raw=body,
        )

    def parse_checkout_completed(
        self, envelope: WebhookEnvelope
    ) -> Optional[CheckoutCompleted]:
        data = envelope.data
        price = dig(data, "items", "0", "price")
        return CheckoutCompleted(
            tenant_id=require_tenant_id(dig(data, "custom_data", "tenant_id")),
            provider_subscription_id=require_str(
                data.get("subscription_id"), "subscription_id"
            ),
            provider_price_id=require_str(dig(price, "id"), "items[0].price.id"),
            provider_customer_id=optional_str(data.get("customer_id")),
            expires_at=parse_timestamp(dig(data, "billing_period", "ends_at")),
            price=_price_details(price, data.get("currency_code")),
        )

    def parse_subscription_updated(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionChanged]:
        data = envelope.data
        price = dig(data, "items", "0", "price")
        provider_status = require_str(data.get("status"), "status")
        return SubscriptionChanged(
            provider_subscription_id=require_str(data.get("id"), "id"),
            provider_status=provider_status,
            status=self.map_status(provider_status),
            expires_at=parse_timestamp(dig(data, "current_billing_period", "ends_at")),
            provider_price_id=optional_str(dig(price, "id")),
            price=_price_details(price, data.get("currency_code")),
        )

    def parse_subscription_cancelled(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionCancelled]:
        return SubscriptionCancelled(
            provider_subscription_id=require_str(envelope.data.get("id"), "id")
        )

    def parse_payment_failed(self, envelope: WebhookEnvelope) -> Optional[PaymentFailed]:
        data = envelope.data
        return PaymentFailed(
            provider_subscription_id=optional_str(data.get("subscription_id")),
            invoice_id=optional_str(data.get("id")),
        )

    def parse_payment_succeeded(
        self, envelope: WebhookEnvelope
    ) -> Optional[PaymentSucceeded]:
        data = envelope.data
        total = parse_amount(
            first_present(data, ("details", "totals", "grand_total"), ("details", "totals", "total"))
        )
        return PaymentSucceeded(
            provider_subscription_id=optional_str(data.get("subscription_id")),
            invoice_id=optional_str(data.get("id")),
            expires_at=parse_timestamp(dig(data, "billing_period", "ends_at")),
            amount_paid=total / 100 if total is not None else None,
            currency=optional_str(data.get("currency_code")),
        )
