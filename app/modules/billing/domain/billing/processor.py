"""
Transactional webhook processor.

One delivery is one unit of work: verify, then inside a single transaction
check the ledger, dispatch, mark the ledger and commit. Any failure before
commit rolls back everything including the ledger mark, so the provider's
redelivery reruns the handler from scratch. Notifications queued during the
transaction are handed back to the caller for best-effort emission after
commit.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.modules.billing.domain.billing.events import EventKind, WebhookEnvelope
from app.modules.billing.domain.billing.idempotency import has_processed, mark_processed
from app.modules.billing.domain.billing.notifications import (
    DomainEvent,
    DomainEventBus,
    event_bus,
)
from app.modules.billing.domain.billing.providers.base import ProviderAdapter
from app.modules.billing.domain.billing.router import EventRouter
from app.modules.billing.domain.billing.security_context import billing_transaction
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import (
    DuplicateEventError,
    MalformedPayloadError,
    SignatureVerificationError,
    SubscriptionConflictError,
    WebhookProcessingTimeoutError,
)
from app.shared.core.ops_metrics import (
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_PROCESSING_SECONDS,
)

logger = structlog.get_logger()


@dataclass
class WebhookResult:
    provider: str
    event_id: str
    event_type: str
    kind: Optional[EventKind]
    processed: bool
    dispatched: bool = False
    notifications: list[DomainEvent] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.processed:
            return "duplicate"
        return "processed" if self.dispatched else "ignored"

    def to_response(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "processed": self.processed,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
        }


class WebhookProcessor:
    def __init__(
        self,
        adapter: ProviderAdapter,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        bus: Optional[DomainEventBus] = None,
        settings: Optional[Settings] = None,
        router: Optional[EventRouter] = None,
    ):
        self.adapter = adapter
        self.session_maker = session_maker
        self.bus = bus or event_bus
        self.settings = settings or get_settings()
        self.router = router or EventRouter(adapter)

    def _count(self, outcome: str) -> None:
        WEBHOOK_DELIVERIES_TOTAL.labels(provider=self.adapter.name, outcome=outcome).inc()

    async def handle(
        self,
        payload: bytes,
        headers: Mapping[str, str],
        now: Optional[float] = None,
    ) -> WebhookResult:
        """Verify and process one delivery. Does not emit notifications."""
        started = time.perf_counter()
        provider = self.adapter.name
        structlog.contextvars.bind_contextvars(provider=provider)
        try:
            if not self.adapter.verify_signature(payload, headers, now):
                self._count("signature_invalid")
                logger.warning("webhook_signature_invalid", payload_len=len(payload))
                raise SignatureVerificationError(provider)

            try:
                envelope = self.adapter.parse_envelope(payload, headers)
            except MalformedPayloadError:
                self._count("malformed")
                logger.error("webhook_envelope_malformed", payload_len=len(payload))
                raise

            structlog.contextvars.bind_contextvars(
                event_id=envelope.event_id, event_type=envelope.event_type
            )
            timeout = self.settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS
            try:
                result = await asyncio.wait_for(
                    self._process_with_retries(envelope), timeout=timeout
                )
            except asyncio.TimeoutError:
                self._count("timeout")
                logger.error("webhook_processing_timeout", timeout_seconds=timeout)
                raise WebhookProcessingTimeoutError(provider, timeout) from None

            self._count(result.status if result.processed else "duplicate")
            return result
        finally:
            WEBHOOK_PROCESSING_SECONDS.labels(provider=provider).observe(
                time.perf_counter() - started
            )
            structlog.contextvars.unbind_contextvars("provider", "event_id", "event_type")

    def _log_conflict_retry(self, retry_state: RetryCallState) -> None:
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "webhook_subscription_conflict_retry",
            attempt=retry_state.attempt_number,
            delay_seconds=round(sleep, 3),
        )

    async def _process_with_retries(self, envelope: WebhookEnvelope) -> WebhookResult:
        attempts = max(0, int(self.settings.SUBSCRIPTION_CONFLICT_RETRIES)) + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(
                initial=self.settings.SUBSCRIPTION_CONFLICT_BACKOFF_INITIAL_SECONDS,
                max=self.settings.SUBSCRIPTION_CONFLICT_BACKOFF_MAX_SECONDS,
                jitter=self.settings.SUBSCRIPTION_CONFLICT_BACKOFF_INITIAL_SECONDS,
            ),
            retry=retry_if_exception_type(SubscriptionConflictError),
            before_sleep=self._log_conflict_retry,
            reraise=True,
        )
        try:
            return await retrying(self._process_once, envelope)
        except SubscriptionConflictError:
            self._count("conflict")
            logger.error("webhook_subscription_conflict_exhausted", attempts=attempts)
            raise

    async def _process_once(self, envelope: WebhookEnvelope) -> WebhookResult:
        result = WebhookResult(
            provider=envelope.provider,
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            kind=envelope.kind,
            processed=True,
        )
        try:
            async with billing_transaction(self.session_maker) as tx:
                if await has_processed(tx, envelope.event_id, envelope.provider):
                    logger.info("webhook_duplicate_ignored")
                    result.processed = False
                    return result

                result.dispatched = await self.router.dispatch(envelope, tx)
                await mark_processed(
                    tx, envelope.event_id, envelope.provider, envelope.event_type
                )
                pending = list(tx.notifications)
        except DuplicateEventError:
            logger.info("webhook_duplicate_rolled_back")
            result.processed = False
            result.dispatched = False
            return result
        except MalformedPayloadError as exc:
            # Rolled back and not marked: a fixed redelivery can still succeed.
            self._count("malformed")
            logger.error(
                "webhook_payload_malformed", error=exc.message, details=exc.details
            )
            raise
        except (SubscriptionConflictError, asyncio.CancelledError):
            raise
        except Exception as exc:
            self._count("error")
            logger.error("webhook_processing_failed", error=str(exc), exc_info=True)
            raise

        result.notifications = pending
        logger.info(
            "webhook_processed",
            dispatched=result.dispatched,
            notifications=len(pending),
        )
        return result

    async def publish(self, result: WebhookResult) -> int:
        """Emit queued notifications; failures are counted and discarded."""
        if not result.notifications:
            return 0
        return await self.bus.publish_all(result.notifications)
