from typing import Optional, Dict, Any


class LedgerlineException(Exception):
    """Base exception for all Ledgerline errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigError(LedgerlineException):
    """Raised when a provider secret or credential is missing."""

    def __init__(self, provider: str, missing_var: str):
        super().__init__(
            f"Payment provider '{provider}' is not configured: {missing_var} is missing",
            code="config_error",
            status_code=500,
            details={"provider": provider, "missing_var": missing_var},
        )
        self.provider = provider
        self.missing_var = missing_var


class UnknownProviderError(LedgerlineException):
    """Raised when a webhook names a provider that is not registered or enabled."""

    def __init__(self, provider: str):
        super().__init__(
            f"Unknown payment provider: {provider}",
            code="unknown_provider",
            status_code=404,
            details={"provider": provider},
        )


class SignatureVerificationError(LedgerlineException):
    """Raised when a delivery fails authenticity or freshness checks."""

    def __init__(self, provider: str, message: str = "Invalid webhook signature"):
        super().__init__(
            message,
            code="signature_invalid",
            status_code=401,
            details={"provider": provider},
        )


class MalformedPayloadError(LedgerlineException):
    """Raised when a webhook payload lacks a field the handler requires."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="malformed_payload", status_code=400, details=details
        )


class UnknownSubscriptionError(LedgerlineException):
    """A provider subscription id with no local row. Handlers treat it as a no-op."""

    def __init__(self, provider: str, provider_subscription_id: str):
        super().__init__(
            f"No local subscription for {provider}:{provider_subscription_id}",
            code="unknown_subscription",
            status_code=200,
            details={
                "provider": provider,
                "provider_subscription_id": provider_subscription_id,
            },
        )


class SecurityContextError(LedgerlineException):
    """Raised when storage is touched under the wrong authorization scope."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="security_context_violation",
            status_code=500,
            details=details,
        )


class SubscriptionConflictError(LedgerlineException):
    """A concurrent delivery broke the one-active-subscription rule. Safe to retry."""

    def __init__(self, tenant_id: Optional[int] = None):
        super().__init__(
            "Concurrent subscription change detected; retry the delivery",
            code="subscription_conflict",
            status_code=503,
            details={"tenant_id": tenant_id},
        )


class WebhookProcessingTimeoutError(LedgerlineException):
    """Raised when a delivery exceeds its processing budget and was rolled back."""

    def __init__(self, provider: str, timeout_seconds: float):
        super().__init__(
            "Webhook processing timed out",
            code="processing_timeout",
            status_code=503,
            details={"provider": provider, "timeout_seconds": timeout_seconds},
        )


class NotificationEmissionError(LedgerlineException):
    """Raised by a best-effort listener. Always caught and discarded."""

    def __init__(self, event: str, message: str = "Notification listener failed"):
        super().__init__(
            message,
            code="notification_failed",
            status_code=500,
            details={"event": event},
        )


class DuplicateEventError(LedgerlineException):
    """A concurrent delivery marked the same event first; this attempt rolls back."""

    def __init__(self, provider: str, event_id: str):
        super().__init__(
            "Webhook event already processed",
            code="duplicate_event",
            status_code=200,
            details={"provider": provider, "event_id": event_id},
        )
