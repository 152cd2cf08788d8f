"""Maintenance triggers for an external scheduler.

Both endpoints answer GET and POST, since hosted schedulers differ in
which they send.  They require ``Authorization: Bearer <API_CRON_SECRET>``
and are otherwise exempt from tenant authentication.
"""

from __future__ import annotations

import logging

from cardboard_core.billing.maintenance import cleanup_stale_reservations, reconcile_stale_accounts
from fastapi import APIRouter

from cardboard_api.dependencies import (
    CounterServiceDep,
    CronAuthDep,
    ReservationServiceDep,
    SessionFactoryDep,
    SettingsDep,
)
from cardboard_api.schemas import CleanupReservationsResponse, ReconcileCountersResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.api_route("/reconcile-counters", methods=["GET", "POST"], response_model=ReconcileCountersResponse)
async def reconcile_counters(
    _auth: CronAuthDep,
    factory: SessionFactoryDep,
    counters: CounterServiceDep,
    settings: SettingsDep,
) -> ReconcileCountersResponse:
    """Reconcile accounts whose counters were not checked recently."""
    summary = await reconcile_stale_accounts(
        factory,
        counters,
        max_age_seconds=settings.reconcile_max_age_seconds,
        batch_size=settings.reconcile_batch_size,
    )
    return ReconcileCountersResponse(success=True, **summary.to_dict())


@router.api_route("/cleanup-reservations", methods=["GET", "POST"], response_model=CleanupReservationsResponse)
async def cleanup_reservations(
    _auth: CronAuthDep,
    reservations: ReservationServiceDep,
    settings: SettingsDep,
) -> CleanupReservationsResponse:
    """Zero pending storage left behind by abandoned uploads."""
    cleaned = await cleanup_stale_reservations(
        reservations,
        max_age_seconds=settings.reservation_cleanup_max_age_seconds,
    )
    return CleanupReservationsResponse(success=True, cleaned=cleaned)
