"""Signing helpers and payload builders for webhook tests."""
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from app.shared.core.config import get_settings

settings = get_settings()

TENANT_ID = 42
OTHER_TENANT_ID = 7
FREE_TIER_ID = 1
STARTER_TIER_ID = 2
PRO_TIER_ID = 3

# provider -> {provider price id: tier id}
CATALOG_PRICES = {
    "stripe": {"P1": PRO_TIER_ID, "P2": STARTER_TIER_ID},
    "paddle": {"pri_pro_monthly": PRO_TIER_ID, "pri_starter_monthly": STARTER_TIER_ID},
    "polar": {"polar_price_pro": PRO_TIER_ID, "polar_price_starter": STARTER_TIER_ID},
    "lemonsqueezy": {"1001": PRO_TIER_ID, "1002": STARTER_TIER_ID},
}


def to_bytes(body: dict[str, Any]) -> bytes:
    return json.dumps(body, separators=(",", ":")).encode()


def stripe_headers(
    payload: bytes, secret: Optional[str] = None, timestamp: Optional[int] = None
) -> dict[str, str]:
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={digest}"}


def paddle_headers(
    payload: bytes, secret: Optional[str] = None, timestamp: Optional[int] = None
) -> dict[str, str]:
    secret = secret or settings.PADDLE_WEBHOOK_SECRET
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode(), f"{ts}:".encode() + payload, hashlib.sha256
    ).hexdigest()
    return {"Paddle-Signature": f"ts={ts};h1={digest}"}


def polar_headers(
    payload: bytes,
    msg_id: str,
    secret: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> dict[str, str]:
    secret = secret or settings.POLAR_WEBHOOK_SECRET
    key = base64.b64decode(secret.removeprefix("whsec_"))
    ts = int(time.time()) if timestamp is None else timestamp
    signature = base64.b64encode(
        hmac.new(key, f"{msg_id}.{ts}.".encode() + payload, hashlib.sha256).digest()
    ).decode()
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(ts),
        "webhook-signature": f"v1,{signature}",
    }


def lemonsqueezy_headers(payload: bytes, secret: Optional[str] = None) -> dict[str, str]:
    secret = secret or settings.LEMONSQUEEZY_WEBHOOK_SECRET
    return {"X-Signature": hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()}


# Stripe


def stripe_checkout(
    event_id: str = "evt_checkout_1",
    tenant_id: Any = 42,
    subscription_id: str = "sub_123",
    price_id: str = "P1",
    customer_id: str = "cus_123",
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"price_id": price_id}
    if tenant_id is not None:
        metadata["tenant_id"] = str(tenant_id)
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "mode": "subscription",
                "customer": customer_id,
                "subscription": subscription_id,
                "amount_total": 4900,
                "currency": "usd",
                "metadata": metadata,
            }
        },
    }


def stripe_subscription_updated(
    event_id: str = "evt_sub_updated_1",
    subscription_id: str = "sub_123",
    status: str = "active",
    price_id: Optional[str] = "P1",
    period_end: Optional[int] = None,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        "price": {
            "id": price_id,
            "unit_amount": 4900,
            "currency": "usd",
            "recurring": {"interval": "month"},
        }
    }
    if period_end is not None:
        item["current_period_end"] = period_end
    return {
        "id": event_id,
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": subscription_id,
                "status": status,
                "items": {"data": [item]},
            }
        },
    }


def stripe_subscription_deleted(
    event_id: str = "evt_sub_deleted_1", subscription_id: str = "sub_123"
) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": subscription_id, "status": "canceled"}},
    }


def stripe_invoice(
    event_type: str = "invoice.payment_succeeded",
    event_id: str = "evt_invoice_1",
    subscription_id: str = "sub_123",
    period_end: Optional[int] = None,
) -> dict[str, Any]:
    invoice: dict[str, Any] = {
        "id": "in_123",
        "subscription": subscription_id,
        "amount_paid": 4900,
        "currency": "usd",
    }
    if period_end is not None:
        invoice["lines"] = {"data": [{"period": {"end": period_end}}]}
    return {"id": event_id, "type": event_type, "data": {"object": invoice}}


# Paddle


def paddle_transaction_completed(
    event_id: str = "evt_pdl_txn_1",
    tenant_id: Any = 42,
    subscription_id: str = "sub_pdl_1",
    price_id: str = "pri_pro_monthly",
    origin: str = "web",
) -> dict[str, Any]:
    return {
        "event_id": event_id,
        "event_type": "transaction.completed",
        "occurred_at": "2026-10-01T12:00:00Z",
        "data": {
            "id": "txn_1",
            "origin": origin,
            "status": "completed",
            "subscription_id": subscription_id,
            "customer_id": "ctm_1",
            "currency_code": "USD",
            "custom_data": {"tenant_id": str(tenant_id)},
            "billing_period": {
                "starts_at": "2026-10-01T12:00:00Z",
                "ends_at": "2026-11-01T12:00:00Z",
            },
            "details": {"totals": {"grand_total": "4900"}},
            "items": [
                {
                    "price": {
                        "id": price_id,
                        "unit_price": {"amount": "4900", "currency_code": "USD"},
                        "billing_cycle": {"interval": "month", "frequency": 1},
                    }
                }
            ],
        },
    }


def paddle_subscription_updated(
    event_id: str = "evt_pdl_sub_1",
    subscription_id: str = "sub_pdl_1",
    status: str = "active",
    price_id: str = "pri_pro_monthly",
) -> dict[str, Any]:
    return {
        "event_id": event_id,
        "event_type": "subscription.updated",
        "data": {
            "id": subscription_id,
            "status": status,
            "currency_code": "USD",
            "current_billing_period": {"ends_at": "2026-12-01T12:00:00Z"},
            "items": [
                {
                    "price": {
                        "id": price_id,
                        "unit_price": {"amount": "4900", "currency_code": "USD"},
                        "billing_cycle": {"interval": "month", "frequency": 1},
                    }
                }
            ],
        },
    }


# Polar


def polar_checkout(
    tenant_id: Any = 42,
    subscription_id: str = "polar_sub_1",
    status: str = "succeeded",
    price_id: str = "polar_price_pro",
) -> dict[str, Any]:
    return {
        "type": "checkout.updated",
        "data": {
            "id": "polar_checkout_1",
            "status": status,
            "subscription_id": subscription_id,
            "customer_id": "polar_cus_1",
            "product_price_id": price_id,
            "amount": 4900,
            "currency": "usd",
            "metadata": {"tenant_id": str(tenant_id)},
        },
    }


def polar_subscription(
    event_type: str = "subscription.updated",
    subscription_id: str = "polar_sub_1",
    status: str = "active",
) -> dict[str, Any]:
    return {
        "type": event_type,
        "data": {
            "id": subscription_id,
            "status": status,
            "current_period_end": "2026-12-01T00:00:00Z",
            "recurring_interval": "month",
            "product_price_id": "polar_price_pro",
            "amount": 4900,
            "currency": "usd",
        },
    }


# LemonSqueezy


def lemonsqueezy_order(
    tenant_id: Any = 42,
    subscription_id: int = 555,
    variant_id: int = 1001,
) -> dict[str, Any]:
    return {
        "meta": {
            "event_name": "order_created",
            "custom_data": {"tenant_id": str(tenant_id)},
        },
        "data": {
            "type": "orders",
            "id": "9001",
            "attributes": {
                "customer_id": 77,
                "total": 4900,
                "currency": "USD",
                "first_order_item": {
                    "subscription_id": subscription_id,
                    "variant_id": variant_id,
                },
            },
        },
    }


def lemonsqueezy_subscription(
    event_name: str = "subscription_updated",
    subscription_id: int = 555,
    status: str = "active",
    variant_id: int = 1001,
) -> dict[str, Any]:
    return {
        "meta": {"event_name": event_name},
        "data": {
            "type": "subscriptions",
            "id": str(subscription_id),
            "attributes": {
                "status": status,
                "variant_id": variant_id,
                "renews_at": "2026-12-01T00:00:00.000000Z",
            },
        },
    }
