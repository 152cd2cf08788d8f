"""Atomic per-tenant usage counters.

Counters (``board_count``, ``card_count``) live on the tenant account row.
``increment_with_check`` performs the read, the ceiling comparison and the
write as one conditional ``UPDATE`` so concurrent callers cannot jointly
overshoot the limit.  Every operation runs in its own short transaction;
no lock is held across the caller's subsequent I/O.

Counters drift when a caller increments and then crashes before writing
(or before compensating).  ``reconcile`` recomputes them from the records
and overwrites whatever is stored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_core.billing.entitlement import Usage, calculate_live_usage
from cardboard_core.billing.limits import STORAGE_FLAG_THRESHOLD_BYTES
from cardboard_core.state.repository import COUNTER_COLUMNS, AccountRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of :meth:`AtomicCounterService.increment_with_check`."""

    ok: bool
    new_value: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    """Stored counters before and after a reconciliation pass."""

    tenant_id: str
    before: Usage
    after: Usage
    storage_flagged: bool

    @property
    def drifted(self) -> bool:
        return self.before != self.after


class AtomicCounterService:
    """Increment/decrement/reconcile operations on tenant counters.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each call commits independently.
    storage_flag_threshold:
        Confirmed storage at or above this many bytes flags the account for
        review during reconciliation.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        storage_flag_threshold: int = STORAGE_FLAG_THRESHOLD_BYTES,
    ) -> None:
        self._session_factory = session_factory
        self._storage_flag_threshold = storage_flag_threshold

    async def increment_with_check(
        self,
        tenant_id: str,
        counter: str,
        delta: int,
        limit: int | None,
    ) -> IncrementResult:
        """Add *delta* to *counter* unless that would exceed *limit*.

        Parameters
        ----------
        tenant_id:
            Account to update.
        counter:
            ``"board_count"`` or ``"card_count"``.
        delta:
            Positive amount to add.
        limit:
            Ceiling for the new value; ``None`` means unlimited.

        Returns
        -------
        IncrementResult
            ``ok=False`` with a human-readable ``reason`` when the write was
            refused.  A refused increment leaves the counter unchanged.

        Raises
        ------
        ValueError
            If *counter* is unknown or *delta* is not positive.
        """
        if counter not in COUNTER_COLUMNS:
            raise ValueError(f"Unknown counter {counter!r}")
        if delta <= 0:
            raise ValueError(f"delta must be positive, got {delta}")

        async with self._session_factory() as session:
            repo = AccountRepository(session)
            new_value = await repo.increment_counter(tenant_id, counter, delta, limit)
            if new_value is not None:
                await session.commit()
                logger.debug("Counter %s for tenant=%s -> %d", counter, tenant_id, new_value)
                return IncrementResult(ok=True, new_value=new_value)

            account = await repo.get(tenant_id)
            await session.rollback()

        if account is None:
            logger.warning("Counter increment for unknown account tenant=%s", tenant_id)
            return IncrementResult(ok=False, reason="Account not found")

        current = int(getattr(account, counter) or 0)
        logger.info(
            "Counter limit hit: tenant=%s %s=%d delta=%d limit=%s",
            tenant_id,
            counter,
            current,
            delta,
            limit,
        )
        return IncrementResult(
            ok=False,
            new_value=current,
            reason=f"Would exceed limit: {current + delta} / {limit}",
        )

    async def decrement(self, tenant_id: str, counter: str, delta: int = 1) -> int | None:
        """Subtract *delta* from *counter*, flooring at zero.

        Used to compensate a downstream write that failed after a successful
        increment.  Returns the new value, or ``None`` if the account is gone.
        """
        if counter not in COUNTER_COLUMNS:
            raise ValueError(f"Unknown counter {counter!r}")
        if delta <= 0:
            raise ValueError(f"delta must be positive, got {delta}")

        async with self._session_factory() as session:
            new_value = await AccountRepository(session).decrement_counter(tenant_id, counter, delta)
            await session.commit()
        return new_value

    async def compensate(self, tenant_id: str, counter: str, delta: int = 1) -> None:
        """Best-effort :meth:`decrement` that never raises.

        A failed compensation is logged and left for the next reconciliation
        pass rather than retried inline.
        """
        try:
            await self.decrement(tenant_id, counter, delta)
        except Exception:
            logger.exception(
                "Compensating decrement failed: tenant=%s %s delta=%d (left for reconciliation)",
                tenant_id,
                counter,
                delta,
            )

    async def reconcile(self, tenant_id: str) -> ReconcileResult | None:
        """Overwrite the stored counters with counts from the records.

        Recomputes ``board_count``, ``card_count`` and
        ``confirmed_storage_bytes`` from non-deleted boards, cards and
        confirmed uploads, stamps ``counters_last_reconciled`` and refreshes
        ``storage_flagged``.
        Pending reservation bytes are left alone.

        Returns ``None`` when the account does not exist.
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            repo = AccountRepository(session)
            account = await repo.get(tenant_id)
            if account is None:
                return None
            before = Usage(
                boards=account.board_count or 0,
                cards=account.card_count or 0,
                storage_bytes=account.confirmed_storage_bytes or 0,
            )
            live = await calculate_live_usage(session, tenant_id)
            flagged = live.storage_bytes >= self._storage_flag_threshold
            await repo.overwrite_counters(
                tenant_id,
                board_count=live.boards,
                card_count=live.cards,
                confirmed_storage_bytes=live.storage_bytes,
                storage_flagged=flagged,
                reconciled_at=now,
            )
            await session.commit()

        result = ReconcileResult(tenant_id=tenant_id, before=before, after=live, storage_flagged=flagged)
        if result.drifted:
            logger.info(
                "Reconciled drifted counters for tenant=%s: boards %d->%d cards %d->%d storage %d->%d",
                tenant_id,
                before.boards,
                live.boards,
                before.cards,
                live.cards,
                before.storage_bytes,
                live.storage_bytes,
            )
        if flagged:
            logger.warning("Storage flag set for tenant=%s (%d bytes)", tenant_id, live.storage_bytes)
        return result

    async def initialize_counters(self, tenant_id: str) -> bool:
        """Populate counters for an account that has never been reconciled.

        Returns ``True`` if the counters were initialised by this call.
        """
        async with self._session_factory() as session:
            account = await AccountRepository(session).get(tenant_id)
            needs_init = account is not None and account.counters_last_reconciled is None
        if not needs_init:
            return False
        await self.reconcile(tenant_id)
        return True
