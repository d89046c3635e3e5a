"""
Keyed registry of payment provider adapters.

Adapters are built from settings at startup; a missing secret raises
`ConfigError` before any request is accepted.
"""

from __future__ import annotations

from typing import Optional

import structlog

from app.modules.billing.domain.billing.providers.base import (
    BaseProviderAdapter,
    ProviderAdapter,
)
from app.modules.billing.domain.billing.providers.lemonsqueezy import (
    LemonSqueezyAdapter,
)
from app.modules.billing.domain.billing.providers.paddle import PaddleAdapter
from app.modules.billing.domain.billing.providers.polar import PolarAdapter
from app.modules.billing.domain.billing.providers.stripe import StripeAdapter
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import UnknownProviderError

logger = structlog.get_logger()

PROVIDER_REGISTRY: dict[str, type[BaseProviderAdapter]] = {
    StripeAdapter.name: StripeAdapter,
    PaddleAdapter.name: PaddleAdapter,
    PolarAdapter.name: PolarAdapter,
    LemonSqueezyAdapter.name: LemonSqueezyAdapter,
}


def get_payment_provider(
    name: Optional[str] = None, settings: Optional[Settings] = None
) -> ProviderAdapter:
    """Build the adapter for `name` (default: PAYMENT_PROVIDER)."""
    settings = settings or get_settings()
    key = (name or settings.PAYMENT_PROVIDER).strip().lower()
    adapter_cls = PROVIDER_REGISTRY.get(key)
    if adapter_cls is None:
        raise UnknownProviderError(key)
    return adapter_cls.from_settings(settings)


def build_enabled_providers(
    settings: Optional[Settings] = None,
) -> dict[str, ProviderAdapter]:
    settings = settings or get_settings()
    adapters = {
        name: get_payment_provider(name, settings)
        for name in settings.ENABLED_PAYMENT_PROVIDERS
    }
    logger.info("payment_providers_configured", providers=sorted(adapters))
    return adapters


__all__ = [
    "BaseProviderAdapter",
    "LemonSqueezyAdapter",
    "PROVIDER_REGISTRY",
    "PaddleAdapter",
    "PolarAdapter",
    "ProviderAdapter",
    "StripeAdapter",
    "build_enabled_providers",
    "get_payment_provider",
]
