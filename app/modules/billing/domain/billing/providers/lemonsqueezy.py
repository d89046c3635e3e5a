"""LemonSqueezy webhook adapter."""

from __future__ import annotations

import hashlib
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
from app.modules.billing.domain.billing.providers.signatures import verify_plain_hmac
from app.shared.core.exceptions import MalformedPayloadError

SIGNATURE_HEADER = "X-Signature"


def build_event_id(payload: bytes) -> str:
    """
    `data.id` names the order/subscription, not the delivery, so repeated
    updates to one resource would collide. A payload hash is stable across
    retries and distinct per update.
    """
    return f"payload_{hashlib.sha256(payload).hexdigest()}"


def _cents(value: Any) -> Any:
    amount = parse_amount(value)
    return amount / 100 if amount is not None else None


def _attributes(envelope: WebhookEnvelope) -> Mapping[str, Any]:
    attributes = envelope.data.get("attributes")
    if attributes is None:
        return {}
    if not isinstance(attributes, Mapping):
        raise MalformedPayloadError(
            "LemonSqueezy data.attributes must be an object",
            details={"provider": "lemonsqueezy"},
        )
    return attributes


class LemonSqueezyAdapter(BaseProviderAdapter):
    name = "lemonsqueezy"
    event_kinds = {
        "order_created": EventKind.CHECKOUT_COMPLETED,
        "subscription_updated": EventKind.SUBSCRIPTION_UPDATED,
        "subscription_cancelled": EventKind.SUBSCRIPTION_CANCELLED,
        "subscription_payment_failed": EventKind.PAYMENT_FAILED,
        "subscription_payment_success": EventKind.PAYMENT_SUCCEEDED,
    }
    status_map = {
        "active": SubscriptionStatus.ACTIVE,
        "on_trial": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.ACTIVE,
        "unpaid": SubscriptionStatus.ACTIVE,
        "cancelled": SubscriptionStatus.CANCELLED,
        "expired": SubscriptionStatus.CANCELLED,
        "paused": SubscriptionStatus.CANCELLED,
    }

    def verify_signature(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> bool:
        # The signature carries no timestamp; the ledger guards against replay.
        return verify_plain_hmac(payload, header(headers, SIGNATURE_HEADER), self._secret)

    def parse_envelope(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookEnvelope:
        body = self._load_json(payload)
        event_type = require_str(dig(body, "meta", "event_name"), "meta.event_name")
        data = body.get("data") if isinstance(body.get("data"), Mapping) else {}
        return WebhookEnvelope(
            provider=self.name,
            event_id=build_event_id(payload),
            event_type=event_type,
            kind=self.translate_event_type(event_type),
            data=data,
            raw=body,
        )

    def parse_checkout_completed(
        self, envelope: WebhookEnvelope
    ) -> Optional[CheckoutCompleted]:
        attributes = _attributes(envelope)
        subscription_id = first_present(
            attributes,
            ("first_subscription_item", "subscription_id"),
            ("first_order_item", "subscription_id"),
        )
        variant_id = first_present(
            attributes, ("variant_id",), ("first_order_item", "variant_id")
        )
        return CheckoutCompleted(
            tenant_id=require_tenant_id(
                dig(envelope.raw, "meta", "custom_data", "tenant_id")
            ),
            provider_subscription_id=require_str(subscription_id, "subscription_id"),
            provider_price_id=require_str(variant_id, "variant_id"),
            provider_customer_id=optional_str(attributes.get("customer_id")),
            expires_at=parse_timestamp(attributes.get("renews_at")),
            price=PriceDetails(
                amount=_cents(attributes.get("total")),
                currency=optional_str(attributes.get("currency")),
            ),
        )

    def parse_subscription_updated(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionChanged]:
        attributes = _attributes(envelope)
        provider_status = require_str(attributes.get("status"), "status")
        return SubscriptionChanged(
            provider_subscription_id=require_str(envelope.data.get("id"), "id"),
            provider_status=provider_status,
            status=self.map_status(provider_status),
            expires_at=parse_timestamp(
                attributes.get("renews_at") or attributes.get("ends_at")
            ),
            provider_price_id=optional_str(attributes.get("variant_id")),
        )

    def parse_subscription_cancelled(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionCancelled]:
        return SubscriptionCancelled(
            provider_subscription_id=require_str(envelope.data.get("id"), "id")
        )

    def parse_payment_failed(self, envelope: WebhookEnvelope) -> Optional[PaymentFailed]:
        attributes = _attributes(envelope)
        return PaymentFailed(
            provider_subscription_id=optional_str(attributes.get("subscription_id")),
            invoice_id=optional_str(envelope.data.get("id")),
        )

    def parse_payment_succeeded(
        self, envelope: WebhookEnvelope
    ) -> Optional[PaymentSucceeded]:
        attributes = _attributes(envelope)
        return PaymentSucceeded(
            provider_subscription_id=optional_str(attributes.get("subscription_id")),
            invoice_id=optional_str(envelope.data.get("id")),
            expires_at=parse_timestamp(attributes.get("renews_at")),
            amount_paid=_cents(attributes.get("total")),
            currency=optional_str(attributes.get("currency")),
        )
