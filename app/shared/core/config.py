from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

SUPPORTED_PAYMENT_PROVIDERS = ("stripe", "paddle", "polar", "lemonsqueezy")
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for Ledgerline.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Ledgerline"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    ALLOW_TEST_DATABASE_URL: bool = False
    DB_SSL_MODE: str = "require"  # disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_USE_NULL_POOL: bool = False
    DB_EXTERNAL_POOLER: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Billing providers
    PAYMENT_PROVIDER: str = "stripe"
    ENABLED_PAYMENT_PROVIDERS: list[str] = ["stripe"]

    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    PADDLE_WEBHOOK_SECRET: Optional[str] = None
    POLAR_WEBHOOK_SECRET: Optional[str] = None
    LEMONSQUEEZY_WEBHOOK_SECRET: Optional[str] = None

    # Signature freshness window; per-provider values override the shared default.
    PAYMENT_WEBHOOK_TOLERANCE_SECONDS: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: Optional[int] = None
    PADDLE_WEBHOOK_TOLERANCE_SECONDS: Optional[int] = None
    POLAR_WEBHOOK_TOLERANCE_SECONDS: Optional[int] = None
    LEMONSQUEEZY_WEBHOOK_TOLERANCE_SECONDS: Optional[int] = None

    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 20.0
    SUBSCRIPTION_CONFLICT_RETRIES: int = 2
    # Exponential backoff with jitter between conflict retries.
    SUBSCRIPTION_CONFLICT_BACKOFF_INITIAL_SECONDS: float = 0.05
    SUBSCRIPTION_CONFLICT_BACKOFF_MAX_SECONDS: float = 1.0
    PROCESSED_WEBHOOK_RETENTION_DAYS: int = Field(
        default=30, description="Idempotency ledger retention horizon"
    )
    FREE_TIER_SLUG: str = "free"

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_billing_config()
        if self.TESTING:
            return self

        self._validate_database_config()
        return self

    def _validate_billing_config(self) -> None:
        self.PAYMENT_PROVIDER = self.PAYMENT_PROVIDER.strip().lower()
        self.ENABLED_PAYMENT_PROVIDERS = [
            name.strip().lower() for name in self.ENABLED_PAYMENT_PROVIDERS if name.strip()
        ]

        unknown = set(self.ENABLED_PAYMENT_PROVIDERS) - set(SUPPORTED_PAYMENT_PROVIDERS)
        if unknown:
            raise ValueError(
                f"ENABLED_PAYMENT_PROVIDERS contains unsupported providers: {sorted(unknown)}"
            )
        if self.PAYMENT_PROVIDER not in SUPPORTED_PAYMENT_PROVIDERS:
            raise ValueError(f"Unsupported PAYMENT_PROVIDER: {self.PAYMENT_PROVIDER}")
        if not self.TESTING and self.PAYMENT_PROVIDER not in self.ENABLED_PAYMENT_PROVIDERS:
            raise ValueError("PAYMENT_PROVIDER must be listed in ENABLED_PAYMENT_PROVIDERS.")

        tolerances = [self.PAYMENT_WEBHOOK_TOLERANCE_SECONDS] + [
            value
            for value in (
                self.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
                self.PADDLE_WEBHOOK_TOLERANCE_SECONDS,
                self.POLAR_WEBHOOK_TOLERANCE_SECONDS,
                self.LEMONSQUEEZY_WEBHOOK_TOLERANCE_SECONDS,
            )
            if value is not None
        ]
        if any(value <= 0 for value in tolerances):
            raise ValueError("Webhook tolerance values must be > 0 seconds.")
        if self.WEBHOOK_PROCESSING_TIMEOUT_SECONDS <= 0:
            raise ValueError("WEBHOOK_PROCESSING_TIMEOUT_SECONDS must be > 0.")
        if self.SUBSCRIPTION_CONFLICT_RETRIES < 0:
            raise ValueError("SUBSCRIPTION_CONFLICT_RETRIES must be >= 0.")
        if (
            self.SUBSCRIPTION_CONFLICT_BACKOFF_INITIAL_SECONDS < 0
            or self.SUBSCRIPTION_CONFLICT_BACKOFF_MAX_SECONDS < 0
        ):
            raise ValueError("Subscription conflict backoff values must be >= 0.")

        if self.is_production:
            for name in self.ENABLED_PAYMENT_PROVIDERS:
                if not self.webhook_secret_for(name):
                    raise ValueError(
                        f"{name.upper()}_WEBHOOK_SECRET is required in production."
                    )

    def _validate_database_config(self) -> None:
        if self.is_production:
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required in production.")
            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be secure in production (current: {self.DB_SSL_MODE})."
                )
            if self.DB_USE_NULL_POOL and not self.DB_EXTERNAL_POOLER:
                raise ValueError(
                    "DB_USE_NULL_POOL=true requires DB_EXTERNAL_POOLER=true in production."
                )

        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def webhook_secret_for(self, provider: str) -> Optional[str]:
        """Return the configured webhook signing secret for a provider."""
        value = getattr(self, f"{provider.upper()}_WEBHOOK_SECRET", None)
        return value or None

    def webhook_tolerance_for(self, provider: str) -> int:
        """Return the signature timestamp tolerance (seconds) for a provider."""
        value = getattr(self, f"{provider.upper()}_WEBHOOK_TOLERANCE_SECONDS", None)
        if value is None:
            return self.PAYMENT_WEBHOOK_TOLERANCE_SECONDS
        return int(value)

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
