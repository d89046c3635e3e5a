"""Idempotency ledger for webhook deliveries."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.webhook_event import ProcessedWebhookEvent
from app.modules.billing.domain.billing.security_context import BillingTransaction
from app.shared.core.config import get_settings
from app.shared.core.exceptions import DuplicateEventError
from app.shared.core.logging import setup_logging
from app.shared.db.base import utcnow
from app.shared.db.session import get_session_maker

logger = structlog.get_logger()


async def has_processed(tx: BillingTransaction, event_id: str, provider: str) -> bool:
    session = tx.ledger_session()
    result = await session.execute(
        select(ProcessedWebhookEvent.id)
        .where(
            ProcessedWebhookEvent.event_id == event_id,
            ProcessedWebhookEvent.provider == provider,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def mark_processed(
    tx: BillingTransaction,
    event_id: str,
    provider: str,
    event_type: Optional[str],
) -> ProcessedWebhookEvent:
    """
    Record the event inside the caller's transaction.

    A unique violation means a concurrent delivery of the same event got
    there first; the whole transaction must then roll back.
    """
    session = tx.ledger_session()
    row = ProcessedWebhookEvent(
        event_id=event_id,
        provider=provider,
        event_type=event_type,
        processed_at=utcnow(),
    )
    session.add(row)
    try:
        await session.flush()
    except IntegrityError as exc:
        logger.info(
            "webhook_ledger_concurrent_duplicate",
            provider=provider,
            event_id=event_id,
            error=str(exc.orig),
        )
        raise DuplicateEventError(provider, event_id) from exc
    return row


async def purge_processed_events(session: AsyncSession, older_than: datetime) -> int:
    """Delete ledger rows processed before `older_than`. Returns the row count."""
    result = await session.execute(
        delete(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.processed_at < older_than
        )
    )
    deleted = int(result.rowcount or 0)
    logger.info(
        "webhook_ledger_purged",
        older_than=older_than.isoformat(),
        deleted=deleted,
    )
    return deleted


async def cleanup_processed_events(
    session: AsyncSession,
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Apply the ledger retention horizon (PROCESSED_WEBHOOK_RETENTION_DAYS by default)."""
    days = (
        get_settings().PROCESSED_WEBHOOK_RETENTION_DAYS
        if retention_days is None
        else retention_days
    )
    cutoff = (now or utcnow()) - timedelta(days=days)
    return await purge_processed_events(session, cutoff)


async def run_ledger_retention(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    now: Optional[datetime] = None,
) -> int:
    """Scheduled job: purge expired ledger rows in one committed transaction."""
    maker = session_maker or get_session_maker()
    async with maker() as session:
        async with session.begin():
            deleted = await cleanup_processed_events(session, now=now)
    logger.info("webhook_ledger_retention_complete", deleted=deleted)
    return deleted


def main() -> None:
    setup_logging()
    asyncio.run(run_ledger_retention())
