"""
Subscription lifecycle: active | expired | cancelled.

Every write that can create an active row first locks the tenant row
(`SELECT ... FOR UPDATE`) so concurrent deliveries for the same tenant
serialize. The partial unique index on `subscriptions(tenant_id) WHERE
status = 'active'` backs this up; a violation surfaces as
`SubscriptionConflictError`, which the processor retries.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription, SubscriptionStatus
from app.models.tenant import Tenant
from app.modules.billing.domain.billing import notifications
from app.modules.billing.domain.billing.catalog import (
    get_tier_id_by_slug,
    resolve_tier_id,
)
from app.modules.billing.domain.billing.customers import upsert_payment_customer
from app.modules.billing.domain.billing.events import (
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCancelled,
    SubscriptionChanged,
)
from app.modules.billing.domain.billing.notifications import DomainEvent
from app.modules.billing.domain.billing.security_context import (
    BillingTransaction,
    SecurityContext,
    with_system_context,
    with_tenant_context,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    ConfigError,
    MalformedPayloadError,
    SubscriptionConflictError,
    UnknownSubscriptionError,
)
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import SUBSCRIPTION_TRANSITIONS_TOTAL
from app.shared.db.base import utcnow

logger = structlog.get_logger()

ACTIVE = SubscriptionStatus.ACTIVE.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELLED = SubscriptionStatus.CANCELLED.value


async def get_active_subscription(
    tx: BillingTransaction, ctx: SecurityContext, tenant_id: int
) -> Optional[Subscription]:
    session = tx.session_for(ctx, tenant_id=tenant_id)
    result = await session.execute(
        select(Subscription).where(
            Subscription.tenant_id == tenant_id,
            Subscription.status == ACTIVE,
        )
    )
    return result.scalars().first()


async def list_subscriptions(
    tx: BillingTransaction, ctx: SecurityContext, tenant_id: int
) -> list[Subscription]:
    """Subscription history for a tenant, newest first."""
    session = tx.session_for(ctx, tenant_id=tenant_id)
    result = await session.execute(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id)
        .order_by(Subscription.starts_at.desc(), Subscription.id.desc())
    )
    return list(result.scalars().all())


async def find_owner_tenant_id(
    tx: BillingTransaction,
    ctx: SecurityContext,
    provider: str,
    provider_subscription_id: str,
) -> Optional[int]:
    """
    Which tenant owns a provider subscription id.

    The one lookup system scope is allowed to perform; it reads only the
    ownership mapping, never the row itself.
    """
    session = tx.session_for(ctx, allow_system=True)
    result = await session.execute(
        select(Subscription.tenant_id).where(
            Subscription.provider_name == provider,
            Subscription.provider_subscription_id == provider_subscription_id,
        )
    )
    return result.scalar_one_or_none()


class SubscriptionStateMachine:
    """Applies webhook events to one provider's subscriptions."""

    def __init__(self, provider: str, free_tier_slug: Optional[str] = None):
        self.provider = provider
        self.free_tier_slug = free_tier_slug or get_settings().FREE_TIER_SLUG

    def _count(self, transition: str) -> None:
        SUBSCRIPTION_TRANSITIONS_TOTAL.labels(
            provider=self.provider, transition=transition
        ).inc()

    async def _lock_tenant(self, session: AsyncSession, tenant_id: int) -> Tenant:
        result = await session.execute(
            select(Tenant).where(Tenant.id == tenant_id).with_for_update()
        )
        tenant = result.scalar_one_or_none()
        if tenant is None:
            raise MalformedPayloadError(
                "Webhook references an unknown tenant", details={"tenant_id": tenant_id}
            )
        return tenant

    async def _flush_guarded(self, session: AsyncSession, tenant_id: int) -> None:
        try:
            await session.flush()
        except IntegrityError as exc:
            logger.warning(
                "subscription_conflict_detected",
                tenant_id=tenant_id,
                error=str(exc.orig),
            )
            raise SubscriptionConflictError(tenant_id) from exc

    async def _cancel_active(
        self,
        session: AsyncSession,
        tenant_id: int,
        keep_id: Optional[int] = None,
    ) -> list[int]:
        stmt = (
            update(Subscription)
            .where(Subscription.tenant_id == tenant_id, Subscription.status == ACTIVE)
            .values(status=CANCELLED, updated_at=utcnow())
            .returning(Subscription.id)
        )
        if keep_id is not None:
            stmt = stmt.where(Subscription.id != keep_id)
        result = await session.execute(stmt)
        cancelled = list(result.scalars().all())
        if cancelled:
            self._count("superseded")
            logger.info(
                "subscription_superseded",
                tenant_id=tenant_id,
                subscription_ids=cancelled,
            )
        return cancelled

    async def _require_tracked(
        self, tx: BillingTransaction, provider_subscription_id: str
    ) -> int:
        async def lookup(ctx: SecurityContext) -> Optional[int]:
            return await find_owner_tenant_id(
                tx, ctx, self.provider, provider_subscription_id
            )

        tenant_id = await with_system_context(tx, lookup)
        if tenant_id is None:
            raise UnknownSubscriptionError(self.provider, provider_subscription_id)
        return tenant_id

    async def _load_tracked(
        self, tx: BillingTransaction, provider_subscription_id: str
    ) -> Optional[int]:
        try:
            return await self._require_tracked(tx, provider_subscription_id)
        except UnknownSubscriptionError:
            logger.info(
                "subscription_untracked_ignored",
                provider_subscription_id=provider_subscription_id,
            )
            return None

    async def _get_row(
        self,
        session: AsyncSession,
        tenant_id: int,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        result = await session.execute(
            select(Subscription).where(
                Subscription.tenant_id == tenant_id,
                Subscription.provider_name == self.provider,
                Subscription.provider_subscription_id == provider_subscription_id,
            )
        )
        return result.scalar_one_or_none()

    async def activate(
        self, tx: BillingTransaction, event: CheckoutCompleted
    ) -> Subscription:
        """(none) -> active, superseding whatever the tenant had."""

        async def run(ctx: SecurityContext) -> Subscription:
            session = tx.session_for(ctx, tenant_id=event.tenant_id)
            await self._lock_tenant(session, event.tenant_id)

            tier_id = await resolve_tier_id(
                session, self.provider, event.provider_price_id
            )
            if tier_id is None:
                raise MalformedPayloadError(
                    "No catalog price for provider price id",
                    details={
                        "provider": self.provider,
                        "provider_price_id": event.provider_price_id,
                    },
                )

            if event.provider_customer_id:
                _, created = await upsert_payment_customer(
                    tx, ctx, event.tenant_id, self.provider, event.provider_customer_id
                )
                if created:
                    tx.queue_notification(
                        DomainEvent(
                            notifications.CUSTOMER_CREATED,
                            {
                                "tenant_id": event.tenant_id,
                                "provider": self.provider,
                                "customer_id": event.provider_customer_id,
                            },
                        )
                    )

            existing = await self._get_row(
                session, event.tenant_id, event.provider_subscription_id
            )
            await self._cancel_active(
                session,
                event.tenant_id,
                keep_id=existing.id if existing is not None else None,
            )

            if existing is not None:
                # Same provider subscription checked out again: reuse the row.
                existing.status = ACTIVE
                existing.tier_id = tier_id
                existing.expires_at = event.expires_at
                subscription = existing
            else:
                subscription = Subscription(
                    tenant_id=event.tenant_id,
                    tier_id=tier_id,
                    status=ACTIVE,
                    starts_at=utcnow(),
                    expires_at=event.expires_at,
                    provider_name=self.provider,
                    provider_subscription_id=event.provider_subscription_id,
                )
                session.add(subscription)
            await self._flush_guarded(session, event.tenant_id)

            self._count("activated")
            audit_log(
                "billing_subscription_created",
                event.tenant_id,
                {
                    "provider": self.provider,
                    "subscription_id": subscription.id,
                    "tier_id": tier_id,
                },
            )
            tx.queue_notification(
                DomainEvent(
                    notifications.SUBSCRIPTION_CREATED,
                    {
                        "tenant_id": event.tenant_id,
                        "subscription_id": subscription.id,
                        "tier_id": tier_id,
                        "provider_subscription_id": event.provider_subscription_id,
                        **event.price.as_dict(),
                    },
                )
            )
            return subscription

        return await with_tenant_context(tx, event.tenant_id, run)

    async def downgrade_to_free(
        self, tx: BillingTransaction, ctx: SecurityContext, tenant_id: int
    ) -> Subscription:
        """Cancel every active row for the tenant and start a free-tier row."""
        session = tx.session_for(ctx, tenant_id=tenant_id)
        await self._lock_tenant(session, tenant_id)
        free_tier_id = await get_tier_id_by_slug(session, self.free_tier_slug)
        if free_tier_id is None:
            raise ConfigError("catalog", f"subscription_tiers[{self.free_tier_slug}]")

        await self._cancel_active(session, tenant_id)
        subscription = Subscription(
            tenant_id=tenant_id,
            tier_id=free_tier_id,
            status=ACTIVE,
            starts_at=utcnow(),
        )
        session.add(subscription)
        await self._flush_guarded(session, tenant_id)
        self._count("downgraded_to_free")
        logger.info(
            "subscription_downgraded_to_free",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
        )
        return subscription

    async def _cancel_row(
        self, tx: BillingTransaction, ctx: SecurityContext, subscription: Subscription
    ) -> Optional[Subscription]:
        """
        Mark `subscription` cancelled, then downgrade to free unless the
        tenant still has another active row.
        """
        if subscription.status == CANCELLED:
            logger.info(
                "subscription_already_cancelled",
                subscription_id=subscription.id,
            )
            return None

        session = tx.session_for(ctx, tenant_id=subscription.tenant_id)
        subscription.status = CANCELLED
        await session.flush()
        self._count("cancelled")
        audit_log(
            "billing_subscription_cancelled",
            subscription.tenant_id,
            {"provider": self.provider, "subscription_id": subscription.id},
        )
        tx.queue_notification(
            DomainEvent(
                notifications.SUBSCRIPTION_CANCELLED,
                {
                    "tenant_id": subscription.tenant_id,
                    "subscription_id": subscription.id,
                    "tier_id": subscription.tier_id,
                },
            )
        )
        current = await get_active_subscription(tx, ctx, subscription.tenant_id)
        if current is not None:
            logger.info(
                "subscription_downgrade_skipped",
                subscription_id=subscription.id,
                active_subscription_id=current.id,
            )
            return None
        return await self.downgrade_to_free(tx, ctx, subscription.tenant_id)

    async def cancel(
        self, tx: BillingTransaction, event: SubscriptionCancelled
    ) -> Optional[Subscription]:
        """active -> cancelled, followed by downgrade-to-free."""
        tenant_id = await self._load_tracked(tx, event.provider_subscription_id)
        if tenant_id is None:
            return None

        async def run(ctx: SecurityContext) -> Optional[Subscription]:
            session = tx.session_for(ctx, tenant_id=tenant_id)
            subscription = await self._get_row(
                session, tenant_id, event.provider_subscription_id
            )
            if subscription is None:
                return None
            await self._cancel_row(tx, ctx, subscription)
            return subscription

        return await with_tenant_context(tx, tenant_id, run)

    async def apply_update(
        self, tx: BillingTransaction, event: SubscriptionChanged
    ) -> Optional[Subscription]:
        """
        Mutate a tracked row from the provider's current view of it.

        A mapped `cancelled` status takes the cancellation path. A row that is
        already cancelled is terminal and ignores late updates.
        """
        tenant_id = await self._load_tracked(tx, event.provider_subscription_id)
        if tenant_id is None:
            return None

        async def run(ctx: SecurityContext) -> Optional[Subscription]:
            session = tx.session_for(ctx, tenant_id=tenant_id)
            subscription = await self._get_row(
                session, tenant_id, event.provider_subscription_id
            )
            if subscription is None:
                return None

            if subscription.status == CANCELLED:
                logger.info(
                    "subscription_update_ignored_terminal",
                    subscription_id=subscription.id,
                    provider_status=event.provider_status,
                )
                return subscription

            if event.status is SubscriptionStatus.CANCELLED:
                await self._cancel_row(tx, ctx, subscription)
                return subscription

            tier_id = await resolve_tier_id(
                session, self.provider, event.provider_price_id
            )
            if tier_id is not None and tier_id != subscription.tier_id:
                logger.info(
                    "subscription_tier_changed",
                    subscription_id=subscription.id,
                    from_tier_id=subscription.tier_id,
                    to_tier_id=tier_id,
                )
                subscription.tier_id = tier_id
            if event.expires_at is not None:
                subscription.expires_at = event.expires_at

            if event.status is SubscriptionStatus.ACTIVE and subscription.status != ACTIVE:
                # Renewal of an expired row: it takes over as the active one.
                await self._lock_tenant(session, tenant_id)
                await self._cancel_active(session, tenant_id, keep_id=subscription.id)
                subscription.status = ACTIVE
            elif event.status is SubscriptionStatus.EXPIRED:
                subscription.status = EXPIRED
            await self._flush_guarded(session, tenant_id)

            self._count("updated")
            audit_log(
                "billing_subscription_updated",
                tenant_id,
                {
                    "provider": self.provider,
                    "subscription_id": subscription.id,
                    "status": subscription.status,
                    "provider_status": event.provider_status,
                },
            )
            tx.queue_notification(
                DomainEvent(
                    notifications.SUBSCRIPTION_UPDATED,
                    {
                        "tenant_id": tenant_id,
                        "subscription_id": subscription.id,
                        "status": subscription.status,
                        "provider_status": event.provider_status,
                        "tier_id": subscription.tier_id,
                        **event.price.as_dict(),
                    },
                )
            )
            return subscription

        return await with_tenant_context(tx, tenant_id, run)

    async def record_payment_succeeded(
        self, tx: BillingTransaction, event: PaymentSucceeded
    ) -> Optional[Subscription]:
        if not event.provider_subscription_id:
            return None
        provider_subscription_id = event.provider_subscription_id
        tenant_id = await self._load_tracked(tx, provider_subscription_id)
        if tenant_id is None:
            return None

        async def run(ctx: SecurityContext) -> Optional[Subscription]:
            session = tx.session_for(ctx, tenant_id=tenant_id)
            subscription = await self._get_row(
                session, tenant_id, provider_subscription_id
            )
            if subscription is None:
                return None
            if event.expires_at is not None and subscription.status != CANCELLED:
                subscription.expires_at = event.expires_at
                await session.flush()
            tx.queue_notification(
                DomainEvent(
                    notifications.INVOICE_PAID,
                    {
                        "tenant_id": tenant_id,
                        "subscription_id": subscription.id,
                        "invoice_id": event.invoice_id,
                        "amount_paid": (
                            str(event.amount_paid)
                            if event.amount_paid is not None
                            else None
                        ),
                        "currency": event.currency,
                    },
                )
            )
            return subscription

        return await with_tenant_context(tx, tenant_id, run)

    async def record_payment_failed(
        self, tx: BillingTransaction, event: PaymentFailed
    ) -> Optional[int]:
        """No state change; resolves the tenant (possibly unknown) for the notification."""
        tenant_id: Optional[int] = None
        if event.provider_subscription_id:
            tenant_id = await self._load_tracked(tx, event.provider_subscription_id)
        audit_log(
            "billing_payment_failed",
            tenant_id,
            {
                "provider": self.provider,
                "provider_subscription_id": event.provider_subscription_id,
                "invoice_id": event.invoice_id,
            },
        )
        tx.queue_notification(
            DomainEvent(
                notifications.PAYMENT_FAILED,
                {
                    "tenant_id": tenant_id,
                    "subscription_id": event.provider_subscription_id,
                    "invoice_id": event.invoice_id,
                },
            )
        )
        return tenant_id

    async def expire_overdue(
        self, tx: BillingTransaction, now: Optional[datetime] = None
    ) -> int:
        """
        active -> expired for rows whose `expires_at` has passed.

        Entry point for the scheduled sweep. Candidates are found under system
        scope; each tenant's rows are then updated under that tenant's scope.
        """
        cutoff = now or utcnow()

        async def candidates(ctx: SecurityContext) -> list[tuple[int, int]]:
            session = tx.session_for(ctx, allow_system=True)
            result = await session.execute(
                select(Subscription.tenant_id, Subscription.id).where(
                    Subscription.status == ACTIVE,
                    Subscription.expires_at.is_not(None),
                    Subscription.expires_at < cutoff,
                )
            )
            return [(row[0], row[1]) for row in result.all()]

        by_tenant: dict[int, list[int]] = {}
        for tenant_id, subscription_id in await with_system_context(tx, candidates):
            by_tenant.setdefault(tenant_id, []).append(subscription_id)

        expired = 0
        for tenant_id, ids in by_tenant.items():

            async def run(ctx: SecurityContext, ids: list[int] = ids, tid: int = tenant_id) -> int:
                session = tx.session_for(ctx, tenant_id=tid)
                result = await session.execute(
                    update(Subscription)
                    .where(
                        Subscription.tenant_id == tid,
                        Subscription.id.in_(ids),
                        Subscription.status == ACTIVE,
                    )
                    .values(status=EXPIRED, updated_at=utcnow())
                )
                return int(result.rowcount or 0)

            expired += await with_tenant_context(tx, tenant_id, run)

        if expired:
            SUBSCRIPTION_TRANSITIONS_TOTAL.labels(
                provider="sweep", transition="expired"
            ).inc(expired)
        logger.info("subscription_sweep_completed", expired=expired)
        return expired

