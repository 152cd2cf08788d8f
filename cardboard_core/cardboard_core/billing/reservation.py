"""Two-phase storage reservations for uploads.

An upload's final size is only known once the object is in the blob
store, so quota is claimed up front and settled afterwards::

    reserve(declared) -> upload -> confirm(id, actual) | release(id)

``reserve`` adds the declared size to ``pending_storage_bytes`` if
``confirmed + pending + declared`` stays within the tier limit, and records
the reservation in ``storage_uploads``.  Confirm and release look the
reservation up by id and take the declared size from that row, never from
the caller.  Each moves the row out of ``pending`` with a conditional
update, so a reservation clears its pending bytes once no matter how often
completion is retried.  Confirm also charges the object's verified size to
``confirmed_storage_bytes`` in the same transaction.  Reservations that are
never settled are swept by :meth:`StorageReservationService.cleanup_stale`.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardboard_core.billing.entitlement import EntitlementResult, Usage, check_limit, evaluate
from cardboard_core.billing.limits import ResourceKind, limit_for
from cardboard_core.state.repository import AccountRepository, StorageUploadRepository
from cardboard_core.state.tables import StorageUploadTable, UploadState

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL_SECONDS = 3600
DEFAULT_CLEANUP_MAX_AGE_SECONDS = 7200

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_reservation_id() -> str:
    """Opaque id of the form ``res_{epoch_ms}_{9 base36 chars}``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"res_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class Reservation:
    """Result of :meth:`StorageReservationService.reserve`."""

    allowed: bool
    reservation_id: str | None = None
    reason: str | None = None
    declared_bytes: int = 0
    expires_at: datetime | None = None
    entitlement: EntitlementResult | None = None


@dataclass(frozen=True)
class Settlement:
    """A reservation that this call moved out of ``pending``."""

    reservation_id: str
    tenant_id: str
    declared_bytes: int
    pending: int | None
    actual_bytes: int | None = None


def _validate_size(nbytes: int) -> None:
    if isinstance(nbytes, bool) or not isinstance(nbytes, int) or nbytes <= 0:
        raise ValueError(f"Declared size must be a positive integer, got {nbytes!r}")


class StorageReservationService:
    """Reserve/confirm/release/cleanup against ``pending_storage_bytes``.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each call commits independently.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def reserve(
        self,
        tenant_id: str,
        declared_bytes: int,
        ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS,
        object_key: str | None = None,
    ) -> Reservation:
        """Claim *declared_bytes* of storage quota for an upload.

        Parameters
        ----------
        tenant_id:
            Account whose quota is charged (the board owner).
        declared_bytes:
            Size the client says it will upload.
        ttl_seconds:
            Lifetime of the upload credential the reservation backs.
        object_key:
            Bucket key the upload will be written to.

        Returns
        -------
        Reservation
            ``allowed=False`` with the entitlement reason when the bytes do
            not fit; nothing is written in that case.
        """
        _validate_size(declared_bytes)
        now = datetime.now(UTC)
        reservation_id = new_reservation_id()

        async with self._session_factory() as session:
            repo = AccountRepository(session)
            account = await repo.get(tenant_id)
            if account is None:
                return Reservation(allowed=False, reason="Account not found", declared_bytes=declared_bytes)

            limit = limit_for(account.subscription_tier, ResourceKind.STORAGE)
            pending = await repo.reserve_pending(tenant_id, declared_bytes, limit, now)
            if pending is None:
                # Refused by the conditional update; re-read for an accurate reason.
                await session.rollback()
                check = await check_limit(session, tenant_id, ResourceKind.STORAGE, declared_bytes)
                logger.info(
                    "Storage reservation refused: tenant=%s bytes=%d reason=%s",
                    tenant_id,
                    declared_bytes,
                    check.reason,
                )
                return Reservation(
                    allowed=False,
                    reason=check.reason or "Storage limit reached",
                    declared_bytes=declared_bytes,
                    entitlement=check,
                )
            await StorageUploadRepository(session).create(reservation_id, tenant_id, declared_bytes, object_key, now)
            await session.commit()

        logger.info(
            "Reserved storage: tenant=%s id=%s key=%s bytes=%d pending=%d",
            tenant_id,
            reservation_id,
            object_key,
            declared_bytes,
            pending,
        )
        return Reservation(
            allowed=True,
            reservation_id=reservation_id,
            declared_bytes=declared_bytes,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    async def lookup(self, reservation_id: str) -> StorageUploadTable | None:
        async with self._session_factory() as session:
            return await StorageUploadRepository(session).get(reservation_id)

    async def confirm(self, reservation_id: str, actual_bytes: int) -> Settlement | None:
        """Settle a reservation after the upload was validated.

        Clears the reserved bytes from pending and charges *actual_bytes* to
        confirmed storage.  A confirmed upload at the same key (an
        overwrite) stops being charged.

        Returns
        -------
        Settlement | None
            ``None`` when the id is unknown or the reservation was already
            settled; no counter is touched in that case.
        """
        if isinstance(actual_bytes, bool) or not isinstance(actual_bytes, int) or actual_bytes < 0:
            raise ValueError(f"Actual size must be a non-negative integer, got {actual_bytes!r}")
        now = datetime.now(UTC)

        async with self._session_factory() as session:
            uploads = StorageUploadRepository(session)
            settled = await uploads.settle(reservation_id, UploadState.CONFIRMED, now, actual_bytes=actual_bytes)
            if settled is None:
                await session.rollback()
                logger.warning("Confirm ignored: reservation %s is unknown or already settled", reservation_id)
                return None
            tenant_id, declared_bytes, object_key = settled

            accounts = AccountRepository(session)
            pending = await accounts.release_pending(tenant_id, declared_bytes, now)
            await accounts.adjust_confirmed(tenant_id, actual_bytes)
            if object_key is not None:
                for owner, nbytes in await uploads.mark_deleted(object_key, now, exclude_id=reservation_id):
                    await accounts.adjust_confirmed(owner, -nbytes)
            await session.commit()

        logger.info(
            "Confirmed reservation %s: tenant=%s declared=%d actual=%d pending=%s",
            reservation_id,
            tenant_id,
            declared_bytes,
            actual_bytes,
            pending,
        )
        return Settlement(
            reservation_id=reservation_id,
            tenant_id=tenant_id,
            declared_bytes=declared_bytes,
            pending=pending,
            actual_bytes=actual_bytes,
        )

    async def release(self, reservation_id: str) -> Settlement | None:
        """Give back a reservation for an abandoned or rejected upload.

        Returns ``None``, touching nothing, when the id is unknown or the
        reservation was already settled.
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            settled = await StorageUploadRepository(session).settle(reservation_id, UploadState.RELEASED, now)
            if settled is None:
                await session.rollback()
                logger.warning("Release ignored: reservation %s is unknown or already settled", reservation_id)
                return None
            tenant_id, declared_bytes, _ = settled
            pending = await AccountRepository(session).release_pending(tenant_id, declared_bytes, now)
            await session.commit()

        logger.info(
            "Released reservation %s: tenant=%s bytes=%d pending=%s",
            reservation_id,
            tenant_id,
            declared_bytes,
            pending,
        )
        return Settlement(
            reservation_id=reservation_id,
            tenant_id=tenant_id,
            declared_bytes=declared_bytes,
            pending=pending,
        )

    async def discard_object(self, object_key: str) -> int:
        """Stop charging for the confirmed upload at *object_key*.

        Called once the object has been removed from the bucket.  Returns
        the bytes given back (0 if nothing confirmed was stored there).
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            retired = await StorageUploadRepository(session).mark_deleted(object_key, now)
            accounts = AccountRepository(session)
            for tenant_id, nbytes in retired:
                await accounts.adjust_confirmed(tenant_id, -nbytes)
            await session.commit()

        freed = sum(nbytes for _, nbytes in retired)
        if retired:
            logger.info("Released %d confirmed bytes for deleted object %s", freed, object_key)
        return freed

    async def recheck_actual(self, tenant_id: str, declared_bytes: int, actual_bytes: int) -> EntitlementResult:
        """Re-run the storage entitlement check with the uploaded object's real size.

        The reservation's own declared bytes are already in
        ``pending_storage_bytes``; they are swapped for *actual_bytes*
        rather than counted twice.
        """
        async with self._session_factory() as session:
            account = await AccountRepository(session).get(tenant_id)
        if account is None:
            return await self._missing_account_result(tenant_id)

        base = Usage.from_account(account)
        without_reservation = Usage(
            boards=base.boards,
            cards=base.cards,
            storage_bytes=(account.confirmed_storage_bytes or 0)
            + max((account.pending_storage_bytes or 0) - declared_bytes, 0),
        )
        return evaluate(account.subscription_tier, without_reservation, ResourceKind.STORAGE, actual_bytes)

    async def _missing_account_result(self, tenant_id: str) -> EntitlementResult:
        async with self._session_factory() as session:
            return await check_limit(session, tenant_id, ResourceKind.STORAGE)

    async def cleanup_stale(self, max_age_seconds: int = DEFAULT_CLEANUP_MAX_AGE_SECONDS) -> int:
        """Expire reservations older than *max_age_seconds* and free their bytes.

        Two passes in one transaction.  Accounts whose last reservation
        activity is older than the cutoff have pending bytes zeroed
        outright, which also clears drift no reservation row accounts for.
        Then every reservation row still pending from before the cutoff is
        marked ``expired`` (so a late completion cannot settle it) and, on
        accounts the first pass left alone, its bytes are subtracted.

        The cutoff must exceed the longest legitimate upload and validation
        window.  Returns the number of accounts swept.
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=max_age_seconds)
        async with self._session_factory() as session:
            accounts = AccountRepository(session)
            zeroed = await accounts.clear_stale_pending(cutoff)
            expired = await StorageUploadRepository(session).expire_stale(cutoff, now)
            for tenant_id, nbytes in expired:
                if tenant_id not in zeroed:
                    await accounts.release_pending(tenant_id, nbytes, now)
            await session.commit()

        swept = set(zeroed) | {tenant_id for tenant_id, _ in expired}
        if swept:
            logger.info(
                "Cleared stale reservations for %d account(s) (%d expired): %s",
                len(swept),
                len(expired),
                ", ".join(sorted(swept)[:20]),
            )
        else:
            logger.debug("No stale reservations older than %s", cutoff.isoformat())
        return len(swept)
