from typing import Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base, TimestampMixin


class SubscriptionTier(TimestampMixin, Base):
    """Internal subscription tier (free, pro, ...). Owned by the catalog, read-only here."""

    __tablename__ = "subscription_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    tier_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscription_tiers.id"), nullable=False, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    tier: Mapped[SubscriptionTier] = relationship(lazy="joined")


class Price(TimestampMixin, Base):
    """
    Maps a provider-side price identifier onto a product (and so onto a tier).
    """

    __tablename__ = "prices"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_price_id", name="uq_prices_provider_price_id"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    interval: Mapped[str] = mapped_column(String(10), default="month")  # month | year
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    unit_amount: Mapped[int] = mapped_column(Integer, default=0)  # minor units
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    product: Mapped[Product] = relationship(lazy="joined")

    @property
    def tier_id(self) -> Optional[int]:
        return self.product.tier_id if self.product is not None else None
