"""Tenant <-> provider customer mapping."""

from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models.payment_customer import PaymentCustomer
from app.modules.billing.domain.billing.security_context import (
    BillingTransaction,
    SecurityContext,
)
from app.shared.core.exceptions import SubscriptionConflictError

logger = structlog.get_logger()


async def upsert_payment_customer(
    tx: BillingTransaction,
    ctx: SecurityContext,
    tenant_id: int,
    provider: str,
    provider_customer_id: str,
) -> tuple[PaymentCustomer, bool]:
    """
    Insert or refresh the (tenant, provider) customer row.

    Returns the row and whether it was newly created.
    """
    session = tx.session_for(ctx, tenant_id=tenant_id)
    result = await session.execute(
        select(PaymentCustomer).where(
            PaymentCustomer.tenant_id == tenant_id,
            PaymentCustomer.provider == provider,
        )
    )
    customer = result.scalar_one_or_none()
    if customer is not None:
        if customer.provider_customer_id != provider_customer_id:
            logger.info(
                "payment_customer_updated",
                tenant_id=tenant_id,
                provider=provider,
            )
            customer.provider_customer_id = provider_customer_id
        return customer, False

    customer = PaymentCustomer(
        tenant_id=tenant_id,
        provider=provider,
        provider_customer_id=provider_customer_id,
    )
    session.add(customer)
    try:
        await session.flush()
    except IntegrityError as exc:
        # A concurrent delivery created the row first; rerun on a fresh transaction.
        logger.warning(
            "payment_customer_conflict_detected",
            tenant_id=tenant_id,
            provider=provider,
            error=str(exc.orig),
        )
        raise SubscriptionConflictError(tenant_id) from exc
    logger.info("payment_customer_created", tenant_id=tenant_id, provider=provider)
    return customer, True
