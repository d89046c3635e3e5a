"""Provider adapter contract and the plumbing shared by every adapter."""

from __future__ import annotations

import json
import time
from typing import Any, ClassVar, Mapping, Optional, Protocol, runtime_checkable

import structlog

from app.models.subscription import SubscriptionStatus
from app.modules.billing.domain.billing.events import (
    CheckoutCompleted,
    EventKind,
    ParsedEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCancelled,
    SubscriptionChanged,
    WebhookEnvelope,
)
from app.shared.core.config import DEFAULT_WEBHOOK_TOLERANCE_SECONDS, Settings
from app.shared.core.exceptions import ConfigError, MalformedPayloadError

logger = structlog.get_logger()


@runtime_checkable
class ProviderAdapter(Protocol):
    name: str

    def verify_signature(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> bool: ...

    def parse_envelope(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookEnvelope: ...

    def parse_event(self, envelope: WebhookEnvelope) -> Optional[ParsedEvent]: ...

    def map_status(self, provider_status: Optional[str]) -> SubscriptionStatus: ...

    async def create_checkout_session(self, **kwargs: Any) -> Any: ...

    async def create_portal_session(self, **kwargs: Any) -> Any: ...

    async def cancel_subscription(self, provider_subscription_id: str) -> Any: ...


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that also works on plain dicts."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


class BaseProviderAdapter:
    """
    Shared behaviour for provider adapters.

    Subclasses declare their vocabulary (`event_kinds`), status table
    (`status_map`) and implement verification, envelope decoding and one
    parser per internal event kind.
    """

    name: ClassVar[str]
    event_kinds: ClassVar[dict[str, EventKind]] = {}
    status_map: ClassVar[dict[str, SubscriptionStatus]] = {}

    def __init__(
        self,
        secret: Optional[str],
        tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
    ):
        if not secret:
            raise ConfigError(self.name, f"{self.name.upper()}_WEBHOOK_SECRET")
        self._secret = secret
        self.tolerance_seconds = int(tolerance_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BaseProviderAdapter":
        return cls(
            secret=settings.webhook_secret_for(cls.name),
            tolerance_seconds=settings.webhook_tolerance_for(cls.name),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} tolerance={self.tolerance_seconds}s>"

    # Signature verification

    def verify_signature(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> bool:
        raise NotImplementedError

    def _now(self, now: Optional[float]) -> float:
        return time.time() if now is None else now

    # Decoding

    def _load_json(self, payload: bytes) -> dict[str, Any]:
        try:
            body = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise MalformedPayloadError(
                "Webhook payload is not valid JSON", details={"provider": self.name}
            ) from None
        if not isinstance(body, dict):
            raise MalformedPayloadError(
                "Webhook payload must be a JSON object", details={"provider": self.name}
            )
        return body

    def parse_envelope(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookEnvelope:
        raise NotImplementedError

    def translate_event_type(self, event_type: str) -> Optional[EventKind]:
        return self.event_kinds.get(event_type)

    def map_status(self, provider_status: Optional[str]) -> SubscriptionStatus:
        """
        Provider status -> internal status.

        Unrecognized strings map to `active` so an unexpected transient state
        never revokes paid access.
        """
        key = (provider_status or "").strip().lower()
        status = self.status_map.get(key)
        if status is None:
            logger.warning(
                "provider_status_unmapped",
                provider=self.name,
                provider_status=provider_status,
            )
            return SubscriptionStatus.ACTIVE
        return status

    # Parsing

    def parse_event(self, envelope: WebhookEnvelope) -> Optional[ParsedEvent]:
        parsers = {
            EventKind.CHECKOUT_COMPLETED: self.parse_checkout_completed,
            EventKind.SUBSCRIPTION_UPDATED: self.parse_subscription_updated,
            EventKind.SUBSCRIPTION_CANCELLED: self.parse_subscription_cancelled,
            EventKind.PAYMENT_FAILED: self.parse_payment_failed,
            EventKind.PAYMENT_SUCCEEDED: self.parse_payment_succeeded,
        }
        if envelope.kind is None:
            return None
        return parsers[envelope.kind](envelope)

    def parse_checkout_completed(
        self, envelope: WebhookEnvelope
    ) -> Optional[CheckoutCompleted]:
        raise NotImplementedError

    def parse_subscription_updated(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionChanged]:
        raise NotImplementedError

    def parse_subscription_cancelled(
        self, envelope: WebhookEnvelope
    ) -> Optional[SubscriptionCancelled]:
        raise NotImplementedError

    def parse_payment_failed(self, envelope: WebhookEnvelope) -> Optional[PaymentFailed]:
        raise NotImplementedError

    def parse_payment_succeeded(
        self, envelope: WebhookEnvelope
    ) -> Optional[PaymentSucceeded]:
        raise NotImplementedError

    # Outbound capabilities handled by a separate checkout service.

    async def create_checkout_session(self, **kwargs: Any) -> Any:
        raise NotImplementedError(f"{self.name}: checkout sessions are not created here")

    async def create_portal_session(self, **kwargs: Any) -> Any:
        raise NotImplementedError(f"{self.name}: portal sessions are not created here")

    async def cancel_subscription(self, provider_subscription_id: str) -> Any:
        raise NotImplementedError(f"{self.name}: outbound cancellation is not supported")
