"""Shared fixtures for CLI tests: a seeded file-backed SQLite database."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from cardboard_core.state.sqlite_adapter import create_local_tables, get_local_engine
from cardboard_core.state.tables import BoardTable, TenantAccountTable
from sqlalchemy.ext.asyncio import async_sessionmaker


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "cli.db"

    async def _create() -> None:
        engine = get_local_engine(path)
        await create_local_tables(engine)
        await engine.dispose()

    asyncio.run(_create())
    return path


@pytest.fixture()
def database_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture()
def seed(db_path: Path) -> Callable[..., None]:
    """Insert an account and, optionally, some live boards for it."""

    def _seed(tenant_id: str = "user-1", boards: int = 0, **fields: Any) -> None:
        async def _insert() -> None:
            engine = get_local_engine(db_path)
            factory = async_sessionmaker(engine, expire_on_commit=False)
            async with factory() as session:
                session.add(
                    TenantAccountTable(
                        tenant_id=tenant_id,
                        email=f"{tenant_id}@example.com",
                        subscription_tier=fields.pop("subscription_tier", "free"),
                        **fields,
                    )
                )
                for i in range(boards):
                    session.add(BoardTable(id=f"{tenant_id}-b{i}", owner_id=tenant_id, title=f"Board {i}"))
                await session.commit()
            await engine.dispose()

        asyncio.run(_insert())

    return _seed
