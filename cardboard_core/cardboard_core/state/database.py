"""Engine and session helpers shared by the API, the CLI and the tests.

The URL scheme picks the backend:

``postgresql+asyncpg://...``
    Pooled engine with server-side statement and lock timeouts, so that a
    stuck counter update fails fast instead of holding a pool slot.
``sqlite+aiosqlite:///path``
    File-backed engine from :mod:`cardboard_core.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_STATEMENT_TIMEOUT_MS = 30_000
_LOCK_TIMEOUT_MS = 10_000

_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def _sqlite_path(database_url: str) -> str:
    """File path part of a SQLite URL; ``:memory:`` when there is none."""
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Build an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg`` or ``sqlite+aiosqlite`` URL.
    pool_size, max_overflow:
        PostgreSQL pool sizing; SQLite ignores both.
    """
    if database_url.startswith("sqlite"):
        from cardboard_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """One ``async_sessionmaker`` per engine; objects stay usable after commit."""
    factory = _factories.get(id(engine))
    if factory is None:
        factory = _factories[id(engine)] = async_sessionmaker(engine, expire_on_commit=False)
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit when the block finishes, roll back if it raises."""
    async with get_session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def ping(session: AsyncSession) -> bool:
    return (await session.execute(text("SELECT 1"))).scalar() == 1
