"""Read-only catalog lookups: provider price id -> internal tier."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.pricing import Price, Product, SubscriptionTier


async def find_price(
    session: AsyncSession, provider: str, provider_price_id: str
) -> Optional[Price]:
    result = await session.execute(
        select(Price)
        .join(Product, Price.product_id == Product.id)
        .where(
            Price.provider == provider,
            Price.provider_price_id == provider_price_id,
        )
    )
    return result.unique().scalar_one_or_none()


async def resolve_tier_id(
    session: AsyncSession, provider: str, provider_price_id: Optional[str]
) -> Optional[int]:
    if not provider_price_id:
        return None
    price = await find_price(session, provider, provider_price_id)
    return price.tier_id if price is not None else None


async def get_tier_id_by_slug(session: AsyncSession, slug: str) -> Optional[int]:
    result = await session.execute(
        select(SubscriptionTier.id).where(SubscriptionTier.slug == slug)
    )
    return result.scalar_one_or_none()
