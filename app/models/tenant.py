from decimal import Decimal
from typing import Optional

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, TimestampMixin


class Tenant(TimestampMixin, Base):
    """
    The billing unit (organization/workspace), not an individual user.

    Subscriptions and payment customers hang off the tenant. The row is also
    the lock target that serializes subscription supersession per tenant.
    """

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Prepaid balance, unrelated to subscriptions.
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    balance_currency: Mapped[Optional[str]] = mapped_column(String(3))
