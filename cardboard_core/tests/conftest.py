"""Shared fixtures for cardboard_core tests.

Tests run against a file-backed SQLite database (one per test) created
through the local adapter, so several sessions can be open at once the
way the services use them.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest_asyncio
from cardboard_core.state.repository import AccountRepository
from cardboard_core.state.sqlite_adapter import create_local_tables, get_local_engine
from cardboard_core.state.tables import TenantAccountTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def make_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[TenantAccountTable]]:
    """Factory fixture inserting a tenant account with the given field values."""

    async def _make(tenant_id: str = "user-1", **fields: Any) -> TenantAccountTable:
        values: dict[str, Any] = {
            "tenant_id": tenant_id,
            "email": f"{tenant_id}@example.com",
            "subscription_tier": "free",
            "board_count": 0,
            "card_count": 0,
            "confirmed_storage_bytes": 0,
            "pending_storage_bytes": 0,
        }
        values.update(fields)
        async with session_factory() as session:
            row = TenantAccountTable(**values)
            session.add(row)
            await session.commit()
        return row

    return _make


@pytest_asyncio.fixture
async def fetch_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[TenantAccountTable | None]]:
    """Read an account back in a fresh session."""

    async def _fetch(tenant_id: str = "user-1") -> TenantAccountTable | None:
        async with session_factory() as session:
            return await AccountRepository(session).get(tenant_id)

    return _fetch
