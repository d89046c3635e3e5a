from app.modules.billing.api.v1.webhooks import router
from app.modules.billing.domain.billing.processor import WebhookProcessor, WebhookResult
from app.modules.billing.domain.billing.providers import (
    build_enabled_providers,
    get_payment_provider,
)

__all__ = [
    "router",
    "WebhookProcessor",
    "WebhookResult",
    "build_enabled_providers",
    "get_payment_provider",
]
