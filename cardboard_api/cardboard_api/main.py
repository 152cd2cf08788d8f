"""ASGI application: middleware stack, routers, error mapping and lifespan."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from cardboard_core.billing.counters import AtomicCounterService
from cardboard_core.billing.exceptions import AccountNotFoundError, QuotaExceededError
from cardboard_core.billing.maintenance import cleanup_stale_reservations, reconcile_stale_accounts
from cardboard_core.billing.reservation import StorageReservationService
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_api import __version__
from cardboard_api.config import APISettings, PlatformEnv, load_api_settings
from cardboard_api.dependencies import Runtime
from cardboard_api.middleware.auth import AuthenticationMiddleware
from cardboard_api.middleware.logging import CORRELATION_HEADER, CorrelationIdFilter, RequestLoggingMiddleware
from cardboard_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from cardboard_api.routers import billing, boards, cron, health, uploads
from cardboard_api.security import TokenManager
from cardboard_api.services.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _use_json_logs() -> None:
    from cardboard_api.middleware.json_formatter import JSONFormatter

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(CorrelationIdFilter())
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)


def _maintenance_scheduler(
    settings: APISettings, factory: async_sessionmaker[AsyncSession]
) -> MaintenanceScheduler:
    counters = AtomicCounterService(factory, storage_flag_threshold=settings.storage_flag_threshold_bytes)
    reservations = StorageReservationService(factory)

    async def reconcile() -> object:
        return await reconcile_stale_accounts(
            factory,
            counters,
            max_age_seconds=settings.reconcile_max_age_seconds,
            batch_size=settings.reconcile_batch_size,
        )

    async def cleanup() -> object:
        return await cleanup_stale_reservations(
            reservations, max_age_seconds=settings.reservation_cleanup_max_age_seconds
        )

    scheduler = MaintenanceScheduler()
    scheduler.add_job("reconcile-counters", settings.reconcile_cron, reconcile)
    scheduler.add_job("cleanup-reservations", settings.reservation_cleanup_cron, cleanup)
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the engine and external clients; close them on shutdown.

    Dev and SQLite deployments get their tables created on startup.
    Everything else is expected to have run ``alembic upgrade head``.
    """
    settings: APISettings = getattr(app.state, "settings", None) or load_api_settings()
    if settings.structured_logging:
        _use_json_logs()

    runtime = Runtime.open(settings)
    if settings.platform_env is PlatformEnv.DEV or settings.database_url.startswith("sqlite"):
        from cardboard_core.state.tables import Base

        async with runtime.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Schema created where missing")
    app.state.runtime = runtime

    scheduler = _maintenance_scheduler(settings, runtime.session_factory) if settings.scheduler_enabled else None
    if scheduler is not None:
        await scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        app.state.runtime = None
        await runtime.close()
        logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _install_middleware(app: FastAPI, settings: APISettings) -> None:
    # Starlette runs the most recently added middleware first, so the
    # request passes CORS -> logging -> auth -> rate limit.  The limiter
    # needs request.state.tenant_id, which auth sets.
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_multiplier=settings.rate_limit_burst_multiplier,
        ),
    )
    app.add_middleware(AuthenticationMiddleware, token_manager=TokenManager(settings.jwt_secret))
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Accept", "Authorization", "Content-Type", CORRELATION_HEADER],
    )


def _error(status_code: int, **content: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(QuotaExceededError)
    async def _quota_exceeded(request: Request, exc: QuotaExceededError) -> JSONResponse:
        logger.info("Quota refusal on %s: %s", request.url.path, exc.reason)
        body: dict[str, Any] = {"error": exc.reason, "upgrade_required": True}
        if exc.result is not None:
            body["current_usage"] = exc.result.current_usage.to_dict()
            body["limits"] = exc.result.limits
        return JSONResponse(status_code=403, content=body)

    @app.exception_handler(AccountNotFoundError)
    async def _account_missing(request: Request, exc: AccountNotFoundError) -> JSONResponse:
        return _error(404, detail="Account not found")

    # Messages from these two may name internal ids; the client gets a
    # generic detail and the log keeps the specifics.
    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected request to %s: %s", request.url.path, exc)
        return _error(400, detail="Invalid request")

    @app.exception_handler(PermissionError)
    async def _forbidden(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("Forbidden request to %s: %s", request.url.path, exc)
        return _error(403, detail="Permission denied")

    @app.exception_handler(SQLAlchemyError)
    async def _database_failure(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database failure on %s", request.url.path, exc_info=exc)
        return _error(500, detail="Internal database error")


def create_app(settings: APISettings | None = None) -> FastAPI:
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Cardboard API",
        description="Boards, cards and uploads with tier quotas and Stripe billing.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    _install_middleware(app, settings)
    for module in (health, boards, uploads, billing, cron):
        app.include_router(module.router, prefix="/api/v1")
    _register_error_handlers(app)
    return app


app = create_app()
