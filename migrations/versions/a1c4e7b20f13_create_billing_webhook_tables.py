"""create billing webhook tables

Revision ID: a1c4e7b20f13
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c4e7b20f13"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TENANT_SCOPE = (
    "current_setting('app.security_scope', TRUE) = 'tenant' "
    "AND tenant_id = NULLIF(current_setting('app.current_tenant_id', TRUE), '')::integer"
)
SYSTEM_SCOPE = "current_setting('app.security_scope', TRUE) = 'system'"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("balance_currency", sa.String(length=3), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "subscription_tiers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(length=50), nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("level", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("tier_id", sa.Integer(), sa.ForeignKey("subscription_tiers.id"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_products_tier_id", "products", ["tier_id"])
    op.create_table(
        "prices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_price_id", sa.String(length=255), nullable=False),
        sa.Column("interval", sa.String(length=10), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("unit_amount", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider", "provider_price_id", name="uq_prices_provider_price_id"),
    )
    op.create_index("ix_prices_product_id", "prices", ["product_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tier_id", sa.Integer(), sa.ForeignKey("subscription_tiers.id"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_name", sa.String(length=32), nullable=True),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=True, unique=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"])
    op.create_index(
        "uq_subscriptions_one_active_per_tenant",
        "subscriptions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("event_id", "provider", name="uq_processed_webhook_events_event_provider"),
    )
    op.create_index(
        "ix_processed_webhook_events_processed_at", "processed_webhook_events", ["processed_at"]
    )

    op.create_table(
        "payment_customers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_payment_customers_tenant_provider"),
    )
    op.create_index("ix_payment_customers_tenant_id", "payment_customers", ["tenant_id"])

    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    # Row-level security keyed on transaction-local settings.
    for table in ("subscriptions", "payment_customers"):
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"""
            CREATE POLICY {table}_tenant_policy ON {table}
            USING ({TENANT_SCOPE})
            WITH CHECK ({TENANT_SCOPE});
            """
        )
    # System scope may only read the subscription ownership mapping.
    op.execute(
        f"""
        CREATE POLICY subscriptions_system_lookup_policy ON subscriptions
        FOR SELECT USING ({SYSTEM_SCOPE});
        """
    )


def downgrade() -> None:
    """Downgrade schema."""
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP POLICY IF EXISTS subscriptions_system_lookup_policy ON subscriptions")
        for table in ("subscriptions", "payment_customers"):
            op.execute(f"DROP POLICY IF EXISTS {table}_tenant_policy ON {table}")
            op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    op.drop_index("ix_payment_customers_tenant_id", table_name="payment_customers")
    op.drop_table("payment_customers")
    op.drop_index("ix_processed_webhook_events_processed_at", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("uq_subscriptions_one_active_per_tenant", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tenant_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_prices_product_id", table_name="prices")
    op.drop_table("prices")
    op.drop_index("ix_products_tier_id", table_name="products")
    op.drop_table("products")
    op.drop_table("subscription_tiers")
    op.drop_table("tenants")
