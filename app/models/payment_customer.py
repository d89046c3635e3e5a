from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, TimestampMixin


class PaymentCustomer(TimestampMixin, Base):
    """Maps a tenant to its customer identifier at one provider."""

    __tablename__ = "payment_customers"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "provider", name="uq_payment_customers_tenant_provider"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
