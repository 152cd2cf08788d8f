"""Shared fixtures for Cardboard API tests.

Provides a file-backed SQLite database, mock Stripe and object-storage
clients, bearer tokens, and an async httpx client bound to the app with
dependency overrides.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set the token secret BEFORE importing application modules so the
# module-level app in cardboard_api.main builds with a deterministic secret.
_TEST_JWT_SECRET = "test-secret-key-for-cardboard-tests"
os.environ.setdefault("API_JWT_SECRET", _TEST_JWT_SECRET)

from cardboard_core.state.sqlite_adapter import create_local_tables, get_local_engine
from cardboard_core.state.tables import TenantAccountTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cardboard_api.config import APISettings
from cardboard_api.dependencies import (
    get_blob_store,
    get_session_factory,
    get_settings,
    get_stripe_gateway,
)
from cardboard_api.main import create_app
from cardboard_api.security import TokenManager
from cardboard_api.services.blob_store import BlobStore
from cardboard_api.services.stripe_gateway import StripeGateway

CRON_SECRET = "cron-test-secret"
STANDARD_PRICE = "price_standard_test"
PRO_PRICE = "price_pro_test"

# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

_token_manager = TokenManager(_TEST_JWT_SECRET)


def _make_auth_headers(tenant_id: str = "user-1", email: str | None = None) -> dict[str, str]:
    token = _token_manager.generate_token(tenant_id, email=email or f"{tenant_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Build ``Authorization`` headers for an arbitrary tenant."""
    return _make_auth_headers


@pytest.fixture()
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        platform_env="dev",
        app_url="https://app.test",
        cors_origins=["http://localhost:3000"],
        jwt_secret=_TEST_JWT_SECRET,
        cron_secret=CRON_SECRET,
        rate_limit_enabled=False,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test_dummy",
        stripe_price_id_standard=STANDARD_PRICE,
        stripe_price_id_pro=PRO_PRICE,
        s3_public_url="https://cdn.test",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "api.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def make_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[TenantAccountTable]]:
    """Insert a tenant account with the given field values."""

    async def _make(tenant_id: str = "user-1", **fields: Any) -> TenantAccountTable:
        values: dict[str, Any] = {
            "tenant_id": tenant_id,
            "email": f"{tenant_id}@example.com",
            "subscription_tier": "free",
        }
        values.update(fields)
        async with session_factory() as session:
            row = TenantAccountTable(**values)
            session.add(row)
            await session.commit()
        return row

    return _make


@pytest_asyncio.fixture()
async def fetch_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[TenantAccountTable | None]]:
    from cardboard_core.state.repository import AccountRepository

    async def _fetch(tenant_id: str = "user-1") -> TenantAccountTable | None:
        async with session_factory() as session:
            return await AccountRepository(session).get(tenant_id)

    return _fetch


# ---------------------------------------------------------------------------
# External clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_gateway() -> MagicMock:
    """Return a mock StripeGateway; tests set return values per call."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.configured = True
    gateway.create_customer.return_value = "cus_new"
    gateway.create_checkout_session.return_value = "https://checkout.stripe.test/session"
    gateway.create_portal_session.return_value = "https://billing.stripe.test/portal"
    return gateway


@pytest.fixture()
def mock_blob_store() -> MagicMock:
    """Return a mock BlobStore with a working presign and public URL."""
    store = MagicMock(spec=BlobStore)
    store.presign_put.side_effect = lambda key, content_type, expires_in: f"https://r2.test/{key}?sig=abc"
    store.public_url.side_effect = lambda key: f"https://cdn.test/{key}"
    store.head_size.return_value = None
    return store


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway: MagicMock,
    mock_blob_store: MagicMock,
):
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app(test_settings)

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_stripe_gateway] = lambda: mock_gateway
    application.dependency_overrides[get_blob_store] = lambda: mock_blob_store
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client authenticated as ``user-1``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=_make_auth_headers(),
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client without credentials."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
