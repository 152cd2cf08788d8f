"""Periodic maintenance jobs: counter reconciliation and reservation cleanup.

Both jobs only move stored values toward ground truth (reconciliation) or
toward zero (cleanup), so they are safe to run alongside live traffic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_core.billing.counters import AtomicCounterService
from cardboard_core.billing.reservation import DEFAULT_CLEANUP_MAX_AGE_SECONDS, StorageReservationService
from cardboard_core.state.repository import AccountRepository

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_MAX_AGE_SECONDS = 86_400


@dataclass
class ReconcileSummary:
    """Outcome of one reconciliation batch."""

    reconciled: int = 0
    total: int = 0
    drifted: int = 0
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reconciled": self.reconciled,
            "total": self.total,
            "drifted": self.drifted,
            "failed": len(self.failed),
        }


async def reconcile_stale_accounts(
    session_factory: async_sessionmaker[AsyncSession],
    counters: AtomicCounterService,
    *,
    max_age_seconds: int = DEFAULT_RECONCILE_MAX_AGE_SECONDS,
    batch_size: int = 500,
) -> ReconcileSummary:
    """Reconcile every account never reconciled or reconciled too long ago.

    Per-account failures are logged and counted; they never abort the batch.

    Parameters
    ----------
    session_factory:
        Factory used to select the candidate accounts.
    counters:
        Service performing the per-account reconciliation.
    max_age_seconds:
        Accounts whose ``counters_last_reconciled`` is older than this
        (or null) are selected.
    batch_size:
        Maximum number of accounts processed per invocation.

    Returns
    -------
    ReconcileSummary
    """
    stale_before = datetime.now(UTC) - timedelta(seconds=max_age_seconds)
    async with session_factory() as session:
        tenant_ids = await AccountRepository(session).list_needing_reconciliation(stale_before, limit=batch_size)

    summary = ReconcileSummary(total=len(tenant_ids))
    for tenant_id in tenant_ids:
        try:
            result = await counters.reconcile(tenant_id)
        except Exception as exc:
            logger.error("Reconciliation failed for tenant=%s: %s", tenant_id, exc, exc_info=True)
            summary.failed.append(tenant_id)
            continue
        if result is None:
            continue
        summary.reconciled += 1
        if result.drifted:
            summary.drifted += 1

    logger.info(
        "Counter reconciliation complete: reconciled=%d total=%d drifted=%d failed=%d",
        summary.reconciled,
        summary.total,
        summary.drifted,
        len(summary.failed),
    )
    return summary


async def cleanup_stale_reservations(
    reservations: StorageReservationService,
    *,
    max_age_seconds: int = DEFAULT_CLEANUP_MAX_AGE_SECONDS,
) -> int:
    """Sweep abandoned storage reservations; returns the number of accounts cleaned."""
    cleaned = await reservations.cleanup_stale(max_age_seconds)
    logger.info("Stale reservation cleanup complete: cleaned=%d", cleaned)
    return cleaned
