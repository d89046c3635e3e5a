from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, utcnow


class ProcessedWebhookEvent(Base):
    """
    Idempotency ledger. A row's existence proves the side effects of
    (event_id, provider) have committed.
    """

    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "event_id", "provider", name="uq_processed_webhook_events_event_provider"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(128))
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
