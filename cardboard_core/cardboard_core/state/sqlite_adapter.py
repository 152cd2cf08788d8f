"""File-backed SQLite engine for development, the operator CLI and tests.

The same ORM tables are used as on PostgreSQL.  Differences worth knowing:

* The schema comes from ``Base.metadata.create_all`` rather than Alembic.
* JSON columns are stored as TEXT.
* Writers serialise on the database file; ``busy_timeout`` makes a second
  writer wait instead of failing immediately, which is what the conditional
  counter updates rely on under concurrency.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = ".cardboard/state.db"

_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = DEFAULT_DB_PATH) -> AsyncEngine:
    """Open (creating parent directories as needed) a SQLite database.

    ``":memory:"`` gives a throwaway database private to one connection.
    """
    if db_path == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: Any, _record: Any) -> None:
        cursor = dbapi_conn.cursor()
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.debug("SQLite engine ready at %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """``CREATE TABLE IF NOT EXISTS`` for every ORM table."""
    from cardboard_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("SQLite schema verified")
