"""
Global pytest fixtures for the Ledgerline test suite.

Provides:
- Async SQLite engine/session per test (temporary file)
- Seeded catalog (tiers, products, prices) and tenants
- Webhook processors wired to the test database
- Async HTTP client against the real app
"""
import os

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_SSL_MODE"] = "disable"
os.environ["ENVIRONMENT"] = "development"
os.environ["ENABLED_PAYMENT_PROVIDERS"] = '["stripe", "paddle", "polar", "lemonsqueezy"]'
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test_secret"
os.environ["PADDLE_WEBHOOK_SECRET"] = "pdl_ntfset_test_secret"
os.environ["POLAR_WEBHOOK_SECRET"] = "whsec_cG9sYXItdGVzdC1zaWduaW5nLWtleQ=="
os.environ["LEMONSQUEEZY_WEBHOOK_SECRET"] = "ls_test_secret"

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.models.pricing import Price, Product, SubscriptionTier  # noqa: E402
from app.models.subscription import Subscription  # noqa: E402
from app.models.tenant import Tenant  # noqa: E402
from app.shared.db.base import Base  # noqa: E402

from tests.utils import (  # noqa: E402
    CATALOG_PRICES,
    FREE_TIER_ID,
    OTHER_TENANT_ID,
    PRO_TIER_ID,
    STARTER_TIER_ID,
    TENANT_ID,
)


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Async SQLite engine on a temporary file, schema created from metadata."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'ledgerline_test.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for seeding and assertions."""
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def seeded(session_maker) -> dict:
    """Tiers free/starter/pro, one price per tier per provider, tenants 42 and 7."""
    async with session_maker() as session:
        async with session.begin():
            session.add_all(
                [
                    SubscriptionTier(id=FREE_TIER_ID, slug="free", name="Free", level=0),
                    SubscriptionTier(
                        id=STARTER_TIER_ID, slug="starter", name="Starter", level=1
                    ),
                    SubscriptionTier(id=PRO_TIER_ID, slug="pro", name="Pro", level=2),
                    Product(id=1, name="Starter", tier_id=STARTER_TIER_ID),
                    Product(id=2, name="Pro", tier_id=PRO_TIER_ID),
                    Tenant(id=TENANT_ID, name="Acme Workspace"),
                    Tenant(id=OTHER_TENANT_ID, name="Globex Workspace"),
                ]
            )
            await session.flush()
            for provider, prices in CATALOG_PRICES.items():
                for provider_price_id, tier_id in prices.items():
                    session.add(
                        Price(
                            product_id=2 if tier_id == PRO_TIER_ID else 1,
                            provider=provider,
                            provider_price_id=provider_price_id,
                            interval="month",
                            currency="USD",
                            unit_amount=4900 if tier_id == PRO_TIER_ID else 1900,
                        )
                    )
    return {"tenant_id": TENANT_ID, "other_tenant_id": OTHER_TENANT_ID}


@pytest.fixture
def fetch_subscriptions(session_maker):
    """Read a tenant's subscription rows in a fresh session, oldest first."""

    async def _fetch(tenant_id: int = TENANT_ID) -> list[Subscription]:
        async with session_maker() as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.tenant_id == tenant_id)
                .order_by(Subscription.id)
            )
            return list(result.scalars().all())

    return _fetch


# ============================================================================
# Billing Fixtures
# ============================================================================


@pytest.fixture
def event_bus():
    from app.modules.billing.domain.billing.notifications import DomainEventBus

    return DomainEventBus()


@pytest.fixture
def make_processor(session_maker, event_bus):
    """Build a WebhookProcessor for a provider against the test database."""
    from app.modules.billing.domain.billing.processor import WebhookProcessor
    from app.modules.billing.domain.billing.providers import get_payment_provider

    def _make(provider: str = "stripe", **kwargs):
        adapter = get_payment_provider(provider)
        return WebhookProcessor(
            adapter, session_maker=session_maker, bus=event_bus, **kwargs
        )

    return _make


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app(make_processor):
    """The real Ledgerline app with processors bound to the test database."""
    from app.main import app as ledgerline_app
    from app.shared.core.config import SUPPORTED_PAYMENT_PROVIDERS
    from app.shared.db.session import reset_db_runtime

    previous = getattr(ledgerline_app.state, "webhook_processors", None)
    ledgerline_app.state.webhook_processors = {
        name: make_processor(name) for name in SUPPORTED_PAYMENT_PROVIDERS
    }
    yield ledgerline_app
    ledgerline_app.state.webhook_processors = previous
    # /health binds the global engine to this test's event loop.
    reset_db_runtime()


@pytest_asyncio.fixture
async def ac(app) -> AsyncGenerator:
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# Utility Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def set_testing_env():
    """Ensure TESTING is set for all tests."""
    os.environ["TESTING"] = "true"
    yield
