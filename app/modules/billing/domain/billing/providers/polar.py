"""Polar webhook adapter (Standard Webhooks signing)."""

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
    verify_standard_webhook,
)

ID_HEADER = "webhook-id"
TIMESTAMP_HEADER = "webhook-timestamp"
SIGNATURE_HEADER = "webhook-signature"

# Checkouts are created long before they are paid.
SUCCEEDED_CHECKOUT_STATUSES = {"succeeded", "confirmed"}


def _pick(data: Any, *names: str) -> Any:
    """Polar payloads are snake_case; SDK-shaped fixtures use camelCase."""
    return first_present(data, *((name,) for name in names))


def _price_details(data: Any) -> PriceDetails:
    amount = parse_amount(_pick(data, "amount", "total_amount"))
    return PriceDetails(
        amount=amount / 100 if amount is not None else None,
        currency=optional_str(_pick(data, "currency")),
        interval=optional_str(_pick(data, "recurring_interval", "recurringInterval")),
    )


def _price_id(data: Any) -> Optional[str]:
    return optional_str(
        first_present(
            data,
            ("product_price_id",),
            ("productPriceId",),
            ("product_price", "id"),
            ("prices", "0", "id"),
            ("price", "id"),
        )
    )


class PolarAdapter(BaseProviderAdapter):
    name = "polar"
    event_kinds = {
        "checkout.created": EventKind.CHECKOUT_COMPLETED,
        "checkout.updated": EventKind.CHECKOUT_COMPLETED,
        "subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
        "subscription.active": EventKind.SUBSCRIPTION_UPDATED,
        "subscription.canceled": EventKind.SUBSCRIPTION_CANCELLED,
        "subscription.revoked": EventKind.SUBSCRIPTION_CANCELLED,
        "order.created": EventKind.PAYMENT_SUCCEEDED,
        "order.paid": EventKind.PAYMENT_SUCCEEDED,
    }
    status_map = {
        "active": SubscriptionStatus.ACTIVE,
        "trialing": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.ACTIVE,
        "unpaid": SubscriptionStatus.ACTIVE,
        "incomplete": SubscriptionStatus.ACTIVE,
        "canceled": SubscriptionStatus.CANCELLED,
        "revoked": SubscriptionStatus.CANCELLED,
        "incomplete_expired": SubscriptionStatus.CANCELLED,
    }

    def verify_signature(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> bool:
        return verify_standard_webhook(
            payload,
            header(headers, ID_HEADER),
            header(headers, TIMESTAMP_HEADER),
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
        data = body.get("data") if isinstance(body.get("data"), Mapping) else {}
        # The message id is stable across retries of one delivery, unlike the
        # resource id, which repeats for every update to the same subscription.
        event_id = optional_str(header(headers, ID_HEADER))
        if event_id is None:
            event_id = f"{self.name}_{event_type}_{require_str(data.get('id'), 'data.id')}"
        return WebhookEnvelope(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            kind=self.translate_event_type(event_type),
            data=data,
            raw=body,
        )

    def parse_checkout_completed(
        self, envelope: WebhookEnvelope
    ) -> Optional[CheckoutCompleted]:
        data = envelope.data
        status = (optional_str(data.get("status")) or "").lower()
        if status not in SUCCEEDED_CHECKOUT_STATUSES:
            return None
        return CheckoutCompleted(
            tenant_id=require_tenant_id(dig(data, "metadata", "tenant_id")),
            provider_subscription_id=require_str(
                _pick(data, "subscription_id", "subscriptionId"), "subscription_id"
            ),
            provider_price_id=require_str(_price_id(data), "product_price_id"),
            provider_customer_id=optional_str(_pick(data, "customer_id", "customerId")),
            expires_at=parse_timestamp(
                _pick(data, "current_period_end", "currentPeriodEnd")
            ),
            price=_price_details(data),
        )

    def parse_subscription_updated(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionChanged]:
        data = envelope.data
        provider_status = require_str(data.get("status"), "status")
        return SubscriptionChanged(
            provider_subscription_id=require_str(data.get("id"), "id"),
            provider_status=provider_status,
            status=self.map_status(provider_status),
            expires_at=parse_timestamp(
                _pick(data, "current_period_end", "currentPeriodEnd")
            ),
            provider_price_id=_price_id(data),
            price=_price_details(data),
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
            provider_subscription_id=optional_str(
                _pick(data, "subscription_id", "subscriptionId")
            ),
            invoice_id=optional_str(data.get("id")),
        )

    def parse_payment_succeeded(
        self, envelope: WebhookEnvelope
    ) -> Optional[PaymentSucceeded]:
        data = envelope.data
        amount = parse_amount(_pick(data, "amount", "total_amount"))
        return PaymentSucceeded(
            provider_subscription_id=optional_str(
                _pick(data, "subscription_id", "subscriptionId")
                or dig(data, "subscription", "id")
            ),
            invoice_id=optional_str(data.get("id")),
            expires_at=parse_timestamp(
                first_present(
                    data,
                    ("subscription", "current_period_end"),
                    ("subscription", "currentPeriodEnd"),
                )
            ),
            amount_paid=amount / 100 if amount is not None else None,
            currency=optional_str(data.get("currency")),
        )
