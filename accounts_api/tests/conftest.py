"""Shared fixtures for accounts API tests.

Provides test settings, an in-memory SQLite session with the billing
tables, mock identity-provider clients, a mock Stripe gateway, and an
async httpx client bound to the FastAPI app with all external
dependencies overridden.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from billing_engine.state.tables import Base, BillingCustomerTable, EntitlementTable
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from accounts_api.config import AccountsSettings
from accounts_api.dependencies import (
    get_db_session,
    get_engine_instance,
    get_identity_admin_client,
    get_identity_client,
    get_login_limiter,
    get_settings,
    get_stripe_gateway,
)
from accounts_api.main import create_app
from accounts_api.middleware.login_rate_limiter import LoginRateLimiter
from accounts_api.services.identity_client import (
    AuthSession,
    AuthUser,
    IdentityAdminClient,
    IdentityClient,
)
from accounts_api.services.stripe_gateway import StripeGateway

TEST_USER = AuthUser(id="user-1", email="user@example.com", created_at="2025-01-01T00:00:00Z")
TEST_TOKEN = "test-access-token"
AUTH_HEADERS: dict[str, str] = {"Authorization": f"Bearer {TEST_TOKEN}"}


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> AccountsSettings:
    """Return a settings object suitable for testing."""
    return AccountsSettings(
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        identity_url="http://identity.test",
        identity_anon_key="anon-key",
        identity_service_role_key="service-role-key",
        stripe_sandbox_secret_key="sk_test_xxx",
        stripe_sandbox_price_id="price_test",
        stripe_sandbox_webhook_secret="whsec_test_xxx",
        app_base_url="https://app.example.com",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine():
    """Provide an engine bound to a fresh in-memory database with all tables."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def db_session(engine):
    """Provide a single async session on the in-memory database."""
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture()
def mock_session() -> AsyncMock:
    """Return a mock AsyncSession for tests that only check call patterns."""
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()

    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = None
    result_mock.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=result_mock)
    return session


async def _seed_billing_state(
    session,
    user_id: str = TEST_USER.id,
    *,
    customer_id: str | None = None,
    status: str | None = None,
    period_end: datetime | None = None,
) -> None:
    """Insert a customer link and/or entitlement for *user_id* and commit."""
    if customer_id is not None:
        session.add(BillingCustomerTable(user_id=user_id, stripe_customer_id=customer_id))
    if status is not None:
        session.add(
            EntitlementTable(
                user_id=user_id,
                stripe_subscription_id="sub_seed",
                stripe_status=status,
                current_period_end=period_end or datetime(2027, 1, 1, tzinfo=UTC),
                updated_at=datetime.now(UTC),
            )
        )
    await session.commit()


@pytest.fixture()
def seed(db_session):
    """Return a coroutine function that seeds billing rows into the test database."""

    async def _seed(user_id: str = TEST_USER.id, **kwargs) -> None:
        await _seed_billing_state(db_session, user_id, **kwargs)

    return _seed


@pytest.fixture()
def test_user() -> AuthUser:
    return TEST_USER


# ---------------------------------------------------------------------------
# External clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_identity() -> AsyncMock:
    """Public identity client that knows one user and accepts any password."""
    client = AsyncMock(spec=IdentityClient)
    client.get_user = AsyncMock(return_value=TEST_USER)
    client.sign_in_with_password = AsyncMock(
        return_value=AuthSession(access_token="fresh-token", refresh_token="refresh", user=TEST_USER)
    )
    client.sign_up = AsyncMock(return_value=TEST_USER)
    client.sign_out = AsyncMock(return_value=None)
    client.send_password_reset = AsyncMock(return_value=None)
    client.update_password = AsyncMock(return_value=TEST_USER)
    return client


@pytest.fixture()
def mock_admin() -> AsyncMock:
    client = AsyncMock(spec=IdentityAdminClient)
    client.delete_user = AsyncMock(return_value=None)
    return client


@pytest.fixture()
def mock_gateway() -> MagicMock:
    """Stripe gateway with canned URLs and one active subscription."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.construct_event = MagicMock()
    gateway.retrieve_subscription = AsyncMock(
        return_value={
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "current_period_end": 1_800_000_000,
        }
    )
    gateway.create_checkout_session = AsyncMock(return_value="https://checkout.stripe.test/c/cs_1")
    gateway.create_portal_session = AsyncMock(return_value="https://billing.stripe.test/p/ps_1")
    return gateway


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings, engine, db_session, mock_identity, mock_admin, mock_gateway):
    """Create a FastAPI app with dependency overrides for testing.

    The database is a real in-memory SQLite instance; the identity provider
    and Stripe are mocks.
    """
    application = create_app()

    async def _override_session():
        yield db_session

    limiter = LoginRateLimiter()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_engine_instance] = lambda: engine
    application.dependency_overrides[get_identity_client] = lambda: mock_identity
    application.dependency_overrides[get_identity_admin_client] = lambda: mock_admin
    application.dependency_overrides[get_stripe_gateway] = lambda: mock_gateway
    application.dependency_overrides[get_login_limiter] = lambda: limiter
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  All requests carry a Bearer token that the
    mock identity client resolves to ``TEST_USER``.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=AUTH_HEADERS) as ac:
        yield ac
