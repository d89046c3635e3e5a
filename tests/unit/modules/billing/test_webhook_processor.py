"""WebhookProcessor: verify -> ledger check -> dispatch -> mark -> commit."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from app.modules.billing.domain.billing import notifications
from app.modules.billing.domain.billing.idempotency import has_processed, mark_processed
from app.modules.billing.domain.billing.security_context import billing_transaction
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    MalformedPayloadError,
    SignatureVerificationError,
    SubscriptionConflictError,
    WebhookProcessingTimeoutError,
)
from app.shared.core.ops_metrics import WEBHOOK_DELIVERIES_TOTAL
from tests.utils import (
    paddle_headers,
    paddle_subscription_updated,
    paddle_transaction_completed,
    stripe_checkout,
    stripe_headers,
    to_bytes,
)


def _deliveries(provider: str, outcome: str) -> float:
    return WEBHOOK_DELIVERIES_TOTAL.labels(provider=provider, outcome=outcome)._value.get()


def _signed_stripe(body):
    payload = to_bytes(body)
    return payload, stripe_headers(payload)


async def _is_marked(session_maker, event_id, provider="stripe"):
    async with billing_transaction(session_maker) as tx:
        return await has_processed(tx, event_id, provider)


async def test_processes_checkout_and_returns_notifications(
    make_processor, seeded, fetch_subscriptions
):
    processor = make_processor("stripe")
    result = await processor.handle(*_signed_stripe(stripe_checkout()))

    assert result.processed is True
    assert result.dispatched is True
    assert result.status == "processed"
    assert [n.name for n in result.notifications] == [
        notifications.CUSTOMER_CREATED,
        notifications.SUBSCRIPTION_CREATED,
    ]
    assert result.to_response() == {
        "status": "processed",
        "processed": True,
        "provider": "stripe",
        "event_id": "evt_checkout_1",
        "event_type": "checkout.session.completed",
    }
    assert len(await fetch_subscriptions()) == 1


async def test_replay_reports_already_processed(make_processor, seeded, fetch_subscriptions):
    processor = make_processor("stripe")
    await processor.handle(*_signed_stripe(stripe_checkout()))
    replay = await processor.handle(*_signed_stripe(stripe_checkout()))

    assert replay.processed is False
    assert replay.status == "duplicate"
    assert replay.notifications == []
    assert len(await fetch_subscriptions()) == 1


async def test_invalid_signature_is_rejected_before_any_storage(
    make_processor, seeded, session_maker
):
    processor = make_processor("stripe")
    payload = to_bytes(stripe_checkout())
    before = _deliveries("stripe", "signature_invalid")

    with pytest.raises(SignatureVerificationError) as exc:
        await processor.handle(payload, stripe_headers(payload, secret="wrong"))
    assert exc.value.status_code == 401
    assert _deliveries("stripe", "signature_invalid") == before + 1
    assert not await _is_marked(session_maker, "evt_checkout_1")


async def test_missing_signature_header_is_rejected(make_processor):
    processor = make_processor("paddle")
    with pytest.raises(SignatureVerificationError):
        await processor.handle(to_bytes(paddle_subscription_updated()), {})


async def test_stale_signature_is_rejected(make_processor):
    processor = make_processor("paddle")
    payload = to_bytes(paddle_subscription_updated())
    headers = paddle_headers(payload, timestamp=1_700_000_000)
    with pytest.raises(SignatureVerificationError):
        await processor.handle(payload, headers, now=1_700_000_000 + 3700)


async def test_injected_clock_accepts_old_but_fresh_delivery(make_processor, seeded):
    processor = make_processor("paddle")
    payload = to_bytes(paddle_transaction_completed())
    headers = paddle_headers(payload, timestamp=1_700_000_000)
    result = await processor.handle(payload, headers, now=1_700_000_000 + 100)
    assert result.processed is True


async def test_unparseable_signed_body_is_malformed(make_processor):
    processor = make_processor("stripe")
    payload = b"definitely not json"
    with pytest.raises(MalformedPayloadError):
        await processor.handle(payload, stripe_headers(payload))


async def test_unknown_event_type_is_marked_and_ignored(make_processor, session_maker):
    processor = make_processor("stripe")
    body = {"id": "evt_customer_1", "type": "customer.created", "data": {"object": {}}}
    result = await processor.handle(*_signed_stripe(body))

    assert result.processed is True
    assert result.dispatched is False
    assert result.status == "ignored"
    assert await _is_marked(session_maker, "evt_customer_1")


async def test_malformed_payload_rolls_back_without_marking(
    make_processor, seeded, session_maker, fetch_subscriptions
):
    processor = make_processor("stripe")
    before = _deliveries("stripe", "malformed")

    with pytest.raises(MalformedPayloadError):
        await processor.handle(*_signed_stripe(stripe_checkout(price_id="P_unknown")))

    assert _deliveries("stripe", "malformed") == before + 1
    assert not await _is_marked(session_maker, "evt_checkout_1")
    assert await fetch_subscriptions() == []

    # A corrected redelivery of the same event id still succeeds.
    result = await processor.handle(*_signed_stripe(stripe_checkout()))
    assert result.processed is True


async def test_concurrent_duplicate_rolls_back_side_effects(
    make_processor, seeded, session_maker, fetch_subscriptions, monkeypatch
):
    """Ledger pre-check passes, then the mark hits the unique key."""
    async with billing_transaction(session_maker) as tx:
        await mark_processed(tx, "evt_checkout_1", "stripe", "checkout.session.completed")

    monkeypatch.setattr(
        "app.modules.billing.domain.billing.processor.has_processed",
        AsyncMock(return_value=False),
    )
    processor = make_processor("stripe")
    result = await processor.handle(*_signed_stripe(stripe_checkout()))

    assert result.processed is False
    assert result.notifications == []
    assert await fetch_subscriptions() == []


async def test_subscription_conflict_is_retried(make_processor, seeded, monkeypatch):
    processor = make_processor("stripe")
    dispatch = AsyncMock(side_effect=[SubscriptionConflictError(42), True])
    monkeypatch.setattr(processor.router, "dispatch", dispatch)

    result = await processor.handle(*_signed_stripe(stripe_checkout()))
    assert result.processed is True
    assert dispatch.await_count == 2


async def test_subscription_conflict_retries_back_off(make_processor, seeded, monkeypatch):
    processor = make_processor("stripe")
    dispatch = AsyncMock(
        side_effect=[SubscriptionConflictError(42), SubscriptionConflictError(42), True]
    )
    monkeypatch.setattr(processor.router, "dispatch", dispatch)

    with capture_logs() as logs:
        result = await processor.handle(*_signed_stripe(stripe_checkout()))

    assert result.processed is True
    retries = [e for e in logs if e["event"] == "webhook_subscription_conflict_retry"]
    assert [e["attempt"] for e in retries] == [1, 2]
    assert all(e["delay_seconds"] > 0 for e in retries)
    assert retries[1]["delay_seconds"] >= 0.1


async def test_subscription_conflict_gives_up_after_retries(
    make_processor, seeded, session_maker, monkeypatch
):
    settings = get_settings().model_copy(update={"SUBSCRIPTION_CONFLICT_RETRIES": 1})
    processor = make_processor("stripe", settings=settings)
    dispatch = AsyncMock(side_effect=SubscriptionConflictError(42))
    monkeypatch.setattr(processor.router, "dispatch", dispatch)

    with pytest.raises(SubscriptionConflictError) as exc:
        await processor.handle(*_signed_stripe(stripe_checkout()))
    assert exc.value.status_code == 503
    assert dispatch.await_count == 2
    assert not await _is_marked(session_maker, "evt_checkout_1")


async def test_processing_timeout_rolls_back(make_processor, seeded, session_maker, monkeypatch):
    settings = get_settings().model_copy(update={"WEBHOOK_PROCESSING_TIMEOUT_SECONDS": 0.05})
    processor = make_processor("stripe", settings=settings)

    async def slow_dispatch(envelope, tx):
        await asyncio.sleep(1)
        return True

    monkeypatch.setattr(processor.router, "dispatch", slow_dispatch)
    with pytest.raises(WebhookProcessingTimeoutError) as exc:
        await processor.handle(*_signed_stripe(stripe_checkout()))
    assert exc.value.status_code == 503
    assert not await _is_marked(session_maker, "evt_checkout_1")


async def test_storage_error_propagates_and_rolls_back(
    make_processor, seeded, session_maker, monkeypatch
):
    processor = make_processor("stripe")
    monkeypatch.setattr(
        processor.router, "dispatch", AsyncMock(side_effect=RuntimeError("db gone"))
    )
    with pytest.raises(RuntimeError):
        await processor.handle(*_signed_stripe(stripe_checkout()))
    assert not await _is_marked(session_maker, "evt_checkout_1")


async def test_publish_isolates_listener_failures(make_processor, seeded, event_bus):
    seen = []

    def broken(event):
        raise RuntimeError("downstream unavailable")

    event_bus.subscribe(notifications.SUBSCRIPTION_CREATED, broken)
    event_bus.subscribe(notifications.ALL_EVENTS, lambda e: seen.append(e.name))

    processor = make_processor("stripe")
    result = await processor.handle(*_signed_stripe(stripe_checkout()))
    failures = await processor.publish(result)

    assert failures == 1
    assert seen == [notifications.CUSTOMER_CREATED, notifications.SUBSCRIPTION_CREATED]
