"""``GET /api/v1/health`` for load balancers; no auth, no rate limit."""

from __future__ import annotations

import logging
from typing import Any

from cardboard_core.state.database import ping
from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError

from cardboard_api import __version__
from cardboard_api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    # A database outage is reported in the body, not the status code: the
    # process itself is alive and restarting it would not help.
    try:
        db_state = "ok" if await ping(session) else "degraded"
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Health check could not reach the database: %s", exc)
        db_state = "degraded"
    return {"status": "healthy", "version": __version__, "db": db_state}
