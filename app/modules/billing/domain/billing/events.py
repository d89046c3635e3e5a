"""
Internal webhook event vocabulary.

Provider adapters translate their own event names to `EventKind` and parse
the payload into one of the typed variants below. Parsing validates the
fields a handler needs, so a missing field surfaces as `MalformedPayloadError`
before any handler runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional, Union

from app.models.subscription import SubscriptionStatus
from app.shared.core.exceptions import MalformedPayloadError


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"


@dataclass(frozen=True)
class WebhookEnvelope:
    """Verified delivery, decoded but not yet validated per kind."""

    provider: str
    event_id: str
    event_type: str
    kind: Optional[EventKind]
    data: Mapping[str, Any]
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceDetails:
    """Provider-reported price info forwarded to notifications."""

    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    interval: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "interval": self.interval,
        }


@dataclass(frozen=True)
class CheckoutCompleted:
    tenant_id: int
    provider_subscription_id: str
    provider_price_id: str
    provider_customer_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    price: PriceDetails = field(default_factory=PriceDetails)
    kind: EventKind = EventKind.CHECKOUT_COMPLETED


@dataclass(frozen=True)
class SubscriptionChanged:
    provider_subscription_id: str
    provider_status: str
    status: SubscriptionStatus
    expires_at: Optional[datetime] = None
    provider_price_id: Optional[str] = None
    price: PriceDetails = field(default_factory=PriceDetails)
    kind: EventKind = EventKind.SUBSCRIPTION_UPDATED


@dataclass(frozen=True)
class SubscriptionCancelled:
    provider_subscription_id: str
    kind: EventKind = EventKind.SUBSCRIPTION_CANCELLED


@dataclass(frozen=True)
class PaymentFailed:
    provider_subscription_id: Optional[str]
    invoice_id: Optional[str] = None
    kind: EventKind = EventKind.PAYMENT_FAILED


@dataclass(frozen=True)
class PaymentSucceeded:
    provider_subscription_id: Optional[str]
    invoice_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    amount_paid: Optional[Decimal] = None
    currency: Optional[str] = None
    kind: EventKind = EventKind.PAYMENT_SUCCEEDED


ParsedEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionCancelled,
    PaymentFailed,
    PaymentSucceeded,
]


def dig(data: Any, *path: str) -> Any:
    """Walk nested mappings/lists; any missing step yields None."""
    current = data
    for key in path:
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, list) and key.isascii() and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def first_present(data: Any, *paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = dig(data, *path)
        if value not in (None, ""):
            return value
    return None


def optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def require_str(value: Any, field_name: str) -> str:
    text = optional_str(value)
    if text is None:
        raise MalformedPayloadError(
            f"Missing {field_name} in webhook payload", details={"field": field_name}
        )
    return text


def require_tenant_id(value: Any) -> int:
    """Tenant ids travel as strings in provider metadata."""
    text = require_str(value, "tenant_id")
    try:
        tenant_id = int(text)
    except ValueError:
        raise MalformedPayloadError(
            "Invalid tenant_id in webhook metadata", details={"tenant_id": text}
        ) from None
    if tenant_id <= 0:
        raise MalformedPayloadError(
            "Invalid tenant_id in webhook metadata", details={"tenant_id": text}
        )
    return tenant_id


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept unix seconds or ISO-8601 strings; anything else is treated as absent."""
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_amount(value: Any) -> Optional[Decimal]:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
