"""Request dependencies and the per-process resources behind them.

:class:`Runtime` holds the engine, session factory, Stripe gateway and
blob store.  The lifespan handler in :mod:`cardboard_api.main` builds one
on startup, stores it on ``app.state.runtime`` and closes it on shutdown.
Routes reach those resources only through the ``*Dep`` aliases below,
which is also what tests override.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from cardboard_core.billing.counters import AtomicCounterService
from cardboard_core.billing.reservation import StorageReservationService
from cardboard_core.state.database import get_engine
from cardboard_core.state.repository import AccountRepository
from cardboard_core.state.tables import TenantAccountTable
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cardboard_api.config import APISettings, load_api_settings
from cardboard_api.services.blob_store import BlobStore
from cardboard_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    stripe_gateway: StripeGateway
    blob_store: BlobStore

    @classmethod
    def open(cls, settings: APISettings) -> Runtime:
        engine = get_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        gateway = StripeGateway(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
        if not gateway.configured:
            logger.warning("API_STRIPE_SECRET_KEY is empty; checkout and portal requests will fail")
        logger.info("Object storage bucket: %s", settings.s3_bucket)
        return cls(
            engine=engine,
            session_factory=async_sessionmaker(engine, expire_on_commit=False),
            stripe_gateway=gateway,
            blob_store=BlobStore.from_settings(settings),
        )

    async def close(self) -> None:
        await self.engine.dispose()


def _runtime(request: Request) -> Runtime:
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Application resources are not open; the lifespan has not run")
    return runtime


def get_settings(request: Request) -> APISettings:
    settings: APISettings | None = getattr(request.app.state, "settings", None)
    return settings if settings is not None else load_api_settings()


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Factory handed to the quota services.

    Counter and reservation operations commit independently of the request,
    so they get the factory and open a short session per operation.
    """
    return _runtime(request).session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    tenant_id: str | None = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_email(request: Request) -> str | None:
    return getattr(request.state, "email", None)


EmailDep = Annotated[str | None, Depends(get_user_email)]


async def get_account(tenant_id: TenantDep, email: EmailDep, factory: SessionFactoryDep) -> TenantAccountTable:
    # Committed before the route runs: the quota services read the row
    # from their own sessions.
    async with factory() as session:
        account = await AccountRepository(session).ensure(tenant_id, email)
        await session.commit()
    return account


AccountDep = Annotated[TenantAccountTable, Depends(get_account)]

# ---------------------------------------------------------------------------
# Services and clients
# ---------------------------------------------------------------------------


def get_counter_service(factory: SessionFactoryDep, settings: SettingsDep) -> AtomicCounterService:
    return AtomicCounterService(factory, storage_flag_threshold=settings.storage_flag_threshold_bytes)


CounterServiceDep = Annotated[AtomicCounterService, Depends(get_counter_service)]


def get_reservation_service(factory: SessionFactoryDep) -> StorageReservationService:
    return StorageReservationService(factory)


ReservationServiceDep = Annotated[StorageReservationService, Depends(get_reservation_service)]


def get_stripe_gateway(request: Request) -> StripeGateway:
    return _runtime(request).stripe_gateway


StripeGatewayDep = Annotated[StripeGateway, Depends(get_stripe_gateway)]


def get_blob_store(request: Request) -> BlobStore:
    return _runtime(request).blob_store


BlobStoreDep = Annotated[BlobStore, Depends(get_blob_store)]

# ---------------------------------------------------------------------------
# Cron triggers
# ---------------------------------------------------------------------------


def require_cron_secret(request: Request, settings: SettingsDep) -> None:
    """Accept only ``Authorization: Bearer <API_CRON_SECRET>``.

    With no secret configured every call is refused, so an unconfigured
    deployment cannot be driven from outside.
    """
    secret = settings.cron_secret.get_secret_value()
    presented = request.headers.get("authorization", "")
    if not secret:
        logger.warning("Cron trigger refused: API_CRON_SECRET is not set")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not hmac.compare_digest(presented.encode(), f"Bearer {secret}".encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


CronAuthDep = Annotated[None, Depends(require_cron_secret)]
