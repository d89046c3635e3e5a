from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, TimestampMixin, utcnow


class SubscriptionStatus(str, Enum):
    """Internal subscription lifecycle states."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_ROW_PREDICATE = text("status = 'active'")


class Subscription(TimestampMixin, Base):
    """
    One billing period/state for one tenant.

    At most one row per tenant may be `active`; the partial unique index below
    enforces that at the database level.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_active_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=ACTIVE_ROW_PREDICATE,
            sqlite_where=ACTIVE_ROW_PREDICATE,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tier_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscription_tiers.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value
    )
    starts_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    provider_name: Mapped[Optional[str]] = mapped_column(String(32))
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True
    )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            # SQLite drops tzinfo on round-trip.
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (now or utcnow()) > expires_at

    def should_expire(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.is_expired(now)
