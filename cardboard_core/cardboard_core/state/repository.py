"""Data access for accounts, boards, cards, uploads and processed webhook events.

Repositories wrap one ``AsyncSession`` and never commit; the caller owns
the transaction.  The usage counters on ``tenant_accounts`` only change
through single conditional ``UPDATE ... RETURNING`` statements, which is
what keeps concurrent increments from overshooting a limit.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardboard_core.state.tables import (
    BoardTable,
    CardTable,
    StorageUploadTable,
    TenantAccountTable,
    UploadState,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = frozenset({"board_count", "card_count"})


async def _insert_ignoring_conflict(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    conflict_columns: list[str],
) -> Any:
    """``INSERT ... ON CONFLICT (conflict_columns) DO NOTHING`` on either backend."""
    if session.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    stmt = insert(table).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    return await session.execute(stmt)


def _counter_column(name: str) -> Any:
    if name not in COUNTER_COLUMNS:
        raise ValueError(f"Unknown counter {name!r}; expected one of {sorted(COUNTER_COLUMNS)}")
    return getattr(TenantAccountTable, name)


def _floored_subtract(column: Any, amount: int) -> Any:
    """SQL expression for ``max(column - amount, 0)``."""
    return case((column < amount, 0), else_=column - amount)


# ---------------------------------------------------------------------------
# AccountRepository
# ---------------------------------------------------------------------------


class AccountRepository:
    """Reads and single-row updates against ``tenant_accounts``.

    Unlike the tenant-scoped repositories below, the account repository
    is keyed per call because webhook handlers and batch jobs operate
    across tenants.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # -- Lookups -------------------------------------------------------------

    async def get(self, tenant_id: str) -> TenantAccountTable | None:
        stmt = select(TenantAccountTable).where(TenantAccountTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, customer_id: str) -> TenantAccountTable | None:
        stmt = select(TenantAccountTable).where(TenantAccountTable.stripe_customer_id == customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> TenantAccountTable | None:
        """Fetch an account by email address (case-insensitive)."""
        stmt = (
            select(TenantAccountTable)
            .where(func.lower(TenantAccountTable.email) == email.lower().strip())
            .order_by(TenantAccountTable.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, tenant_id: str, email: str | None = None) -> TenantAccountTable:
        """Create the account row on first sight, then return it.

        Concurrent first requests for the same tenant race on the primary
        key; the loser's insert is a no-op.
        """
        await _insert_ignoring_conflict(
            self._session,
            TenantAccountTable,
            {
                "tenant_id": tenant_id,
                "email": email.lower().strip() if email else None,
                "subscription_tier": "free",
                "cancel_at_period_end": False,
                "board_count": 0,
                "card_count": 0,
                "confirmed_storage_bytes": 0,
                "pending_storage_bytes": 0,
                "storage_flagged": False,
                "created_at": datetime.now(UTC),
                "updated_at": datetime.now(UTC),
            },
            conflict_columns=["tenant_id"],
        )
        row = await self.get(tenant_id)
        assert row is not None
        if email and not row.email:
            row.email = email.lower().strip()
            await self._session.flush()
        return row

    # -- Item counters -------------------------------------------------------

    async def increment_counter(
        self,
        tenant_id: str,
        counter: str,
        delta: int,
        limit: int | None,
    ) -> int | None:
        """Add *delta* to *counter* unless the result would exceed *limit*.

        Returns the new value, or ``None`` when no row was updated (either
        the account is missing or the ceiling would be crossed).
        """
        column = _counter_column(counter)
        stmt = update(TenantAccountTable).where(TenantAccountTable.tenant_id == tenant_id)
        if limit is not None:
            stmt = stmt.where(column + delta <= limit)
        stmt = (
            stmt.values({counter: column + delta, "updated_at": datetime.now(UTC)})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def decrement_counter(self, tenant_id: str, counter: str, delta: int) -> int | None:
        """Subtract *delta* from *counter*, flooring at zero."""
        column = _counter_column(counter)
        stmt = (
            update(TenantAccountTable)
            .where(TenantAccountTable.tenant_id == tenant_id)
            .values({counter: _floored_subtract(column, delta), "updated_at": datetime.now(UTC)})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    # -- Storage bytes -------------------------------------------------------

    async def reserve_pending(
        self,
        tenant_id: str,
        nbytes: int,
        limit: int | None,
        now: datetime,
    ) -> int | None:
        """Add *nbytes* to pending storage if confirmed + pending stays in *limit*.

        Returns the new pending total, or ``None`` when nothing was updated.
        """
        acct = TenantAccountTable
        stmt = update(acct).where(acct.tenant_id == tenant_id)
        if limit is not None:
            stmt = stmt.where(acct.confirmed_storage_bytes + acct.pending_storage_bytes + nbytes <= limit)
        stmt = (
            stmt.values(
                pending_storage_bytes=acct.pending_storage_bytes + nbytes,
                last_storage_sync=now,
                updated_at=now,
            )
            .returning(acct.pending_storage_bytes)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def release_pending(
        self,
        tenant_id: str,
        nbytes: int,
        now: datetime,
    ) -> int | None:
        """Subtract *nbytes* from pending storage (floored at zero)."""
        acct = TenantAccountTable
        stmt = (
            update(acct)
            .where(acct.tenant_id == tenant_id)
            .values(
                pending_storage_bytes=_floored_subtract(acct.pending_storage_bytes, nbytes),
                last_storage_sync=now,
                updated_at=now,
            )
            .returning(acct.pending_storage_bytes)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def adjust_confirmed(self, tenant_id: str, delta: int) -> int | None:
        """Add (or, for negative *delta*, remove) confirmed storage bytes."""
        acct = TenantAccountTable
        if delta >= 0:
            new_value: Any = acct.confirmed_storage_bytes + delta
        else:
            new_value = _floored_subtract(acct.confirmed_storage_bytes, -delta)
        stmt = (
            update(acct)
            .where(acct.tenant_id == tenant_id)
            .values(confirmed_storage_bytes=new_value, updated_at=datetime.now(UTC))
            .returning(acct.confirmed_storage_bytes)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def clear_stale_pending(self, cutoff: datetime) -> list[str]:
        """Zero pending bytes on accounts idle since before *cutoff*.

        Returns the tenant ids that were swept.
        """
        acct = TenantAccountTable
        stmt = (
            update(acct)
            .where(
                acct.pending_storage_bytes > 0,
                or_(acct.last_storage_sync.is_(None), acct.last_storage_sync < cutoff),
            )
            .values(pending_storage_bytes=0, updated_at=datetime.now(UTC))
            .returning(acct.tenant_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    # -- Reconciliation ------------------------------------------------------

    async def overwrite_counters(
        self,
        tenant_id: str,
        *,
        board_count: int,
        card_count: int,
        confirmed_storage_bytes: int,
        storage_flagged: bool,
        reconciled_at: datetime,
    ) -> bool:
        """Replace the running counters with recomputed values."""
        stmt = (
            update(TenantAccountTable)
            .where(TenantAccountTable.tenant_id == tenant_id)
            .values(
                board_count=board_count,
                card_count=card_count,
                confirmed_storage_bytes=confirmed_storage_bytes,
                storage_flagged=storage_flagged,
                counters_last_reconciled=reconciled_at,
                updated_at=reconciled_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def list_needing_reconciliation(self, stale_before: datetime, limit: int = 500) -> list[str]:
        """Tenant ids never reconciled or last reconciled before *stale_before*."""
        acct = TenantAccountTable
        stmt = (
            select(acct.tenant_id)
            .where(or_(acct.counters_last_reconciled.is_(None), acct.counters_last_reconciled < stale_before))
            .order_by(acct.counters_last_reconciled.is_(None).desc(), acct.counters_last_reconciled)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    # -- Subscription state --------------------------------------------------

    async def apply_fields(self, tenant_id: str, fields: dict[str, Any]) -> bool:
        """Set absolute field values on the account (webhook handlers)."""
        if not fields:
            return True
        values = dict(fields)
        values["updated_at"] = datetime.now(UTC)
        stmt = (
            update(TenantAccountTable)
            .where(TenantAccountTable.tenant_id == tenant_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def link_stripe_customer(self, tenant_id: str, customer_id: str) -> None:
        await self.apply_fields(tenant_id, {"stripe_customer_id": customer_id})


# ---------------------------------------------------------------------------
# BoardRepository (tenant-scoped)
# ---------------------------------------------------------------------------


class BoardRepository:
    """CRUD for boards owned by a single tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(
        self,
        *,
        title: str = "Untitled Board",
        color: str = "#ffffff",
        is_public: bool = False,
        parent_board_id: str | None = None,
    ) -> BoardTable:
        row = BoardTable(
            id=uuid.uuid4().hex,
            owner_id=self._tenant_id,
            title=title,
            color=color,
            is_public=is_public,
            parent_board_id=parent_board_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, board_id: str) -> BoardTable | None:
        """Fetch a live board owned by this tenant."""
        stmt = select(BoardTable).where(
            BoardTable.id == board_id,
            BoardTable.owner_id == self._tenant_id,
            BoardTable.deleted_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self, limit: int = 200, offset: int = 0) -> list[BoardTable]:
        stmt = (
            select(BoardTable)
            .where(BoardTable.owner_id == self._tenant_id, BoardTable.deleted_at.is_(None))
            .order_by(BoardTable.created_at.desc())
            .limit(min(limit, 500))
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def soft_delete(self, board_id: str) -> bool:
        now = datetime.now(UTC)
        stmt = (
            update(BoardTable)
            .where(
                BoardTable.id == board_id,
                BoardTable.owner_id == self._tenant_id,
                BoardTable.deleted_at.is_(None),
            )
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def count_active(self) -> int:
        stmt = select(func.count()).where(BoardTable.owner_id == self._tenant_id, BoardTable.deleted_at.is_(None))
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)


async def get_board_any_owner(session: AsyncSession, board_id: str) -> BoardTable | None:
    """Fetch a live board regardless of owner (ownership checks, uploads)."""
    stmt = select(BoardTable).where(BoardTable.id == board_id, BoardTable.deleted_at.is_(None))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# CardRepository (tenant-scoped)
# ---------------------------------------------------------------------------


class CardRepository:
    """CRUD for cards owned by a single tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(
        self,
        board_id: str,
        kind: str,
        payload: dict[str, Any],
        storage_bytes: int = 0,
    ) -> CardTable:
        row = CardTable(
            id=uuid.uuid4().hex,
            board_id=board_id,
            owner_id=self._tenant_id,
            kind=kind,
            payload=payload,
            storage_bytes=storage_bytes,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, card_id: str) -> CardTable | None:
        stmt = select(CardTable).where(
            CardTable.id == card_id,
            CardTable.owner_id == self._tenant_id,
            CardTable.deleted_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_board(self, board_id: str) -> list[CardTable]:
        stmt = (
            select(CardTable)
            .where(
                CardTable.board_id == board_id,
                CardTable.owner_id == self._tenant_id,
                CardTable.deleted_at.is_(None),
            )
            .order_by(CardTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def soft_delete(self, card_id: str) -> CardTable | None:
        """Mark a card deleted; returns the row or ``None``."""
        row = await self.get(card_id)
        if row is None:
            return None
        row.deleted_at = datetime.now(UTC)
        await self._session.flush()
        return row

    async def soft_delete_for_board(self, board_id: str) -> int:
        """Soft-delete every live card on a board; returns how many."""
        stmt = (
            update(CardTable)
            .where(
                CardTable.board_id == board_id,
                CardTable.owner_id == self._tenant_id,
                CardTable.deleted_at.is_(None),
            )
            .values(deleted_at=datetime.now(UTC), updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def count_active(self) -> int:
        stmt = select(func.count()).where(CardTable.owner_id == self._tenant_id, CardTable.deleted_at.is_(None))
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)


# ---------------------------------------------------------------------------
# StorageUploadRepository
# ---------------------------------------------------------------------------


class StorageUploadRepository:
    """Upload reservations in ``storage_uploads``.

    Every state change is an ``UPDATE`` guarded on the current state, so a
    reservation is settled at most once no matter how often completion is
    retried or how many requests race on it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        reservation_id: str,
        tenant_id: str,
        declared_bytes: int,
        object_key: str | None,
        now: datetime,
    ) -> StorageUploadTable:
        row = StorageUploadTable(
            id=reservation_id,
            tenant_id=tenant_id,
            object_key=object_key,
            declared_bytes=declared_bytes,
            state=UploadState.PENDING.value,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, reservation_id: str) -> StorageUploadTable | None:
        # Rows change through bulk UPDATEs; refresh any copy already in the session.
        stmt = (
            select(StorageUploadTable)
            .where(StorageUploadTable.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def settle(
        self,
        reservation_id: str,
        state: UploadState,
        now: datetime,
        actual_bytes: int | None = None,
    ) -> tuple[str, int, str | None] | None:
        """Move a pending reservation to *state*.

        Returns ``(tenant_id, declared_bytes, object_key)`` of the settled
        row, or ``None`` when the id is unknown or the row already left
        ``pending``.
        """
        up = StorageUploadTable
        values: dict[str, Any] = {"state": state.value, "settled_at": now}
        if actual_bytes is not None:
            values["actual_bytes"] = actual_bytes
        stmt = (
            update(up)
            .where(up.id == reservation_id, up.state == UploadState.PENDING.value)
            .values(values)
            .returning(up.tenant_id, up.declared_bytes, up.object_key)
            .execution_options(synchronize_session=False)
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row[0], int(row[1]), row[2]

    async def find_confirmed(self, tenant_id: str, object_key: str) -> StorageUploadTable | None:
        """The live confirmed upload stored at *object_key* for *tenant_id*."""
        up = StorageUploadTable
        stmt = (
            select(up)
            .where(
                up.tenant_id == tenant_id,
                up.object_key == object_key,
                up.state == UploadState.CONFIRMED.value,
            )
            .order_by(up.settled_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_deleted(
        self,
        object_key: str,
        now: datetime,
        exclude_id: str | None = None,
    ) -> list[tuple[str, int]]:
        """Retire the confirmed uploads stored at *object_key*.

        Returns ``(tenant_id, actual_bytes)`` for every row retired.
        """
        up = StorageUploadTable
        stmt = update(up).where(up.object_key == object_key, up.state == UploadState.CONFIRMED.value)
        if exclude_id is not None:
            stmt = stmt.where(up.id != exclude_id)
        stmt = (
            stmt.values(state=UploadState.DELETED.value, settled_at=now)
            .returning(up.tenant_id, up.actual_bytes)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return [(tenant_id, int(nbytes or 0)) for tenant_id, nbytes in result.all()]

    async def expire_stale(self, cutoff: datetime, now: datetime) -> list[tuple[str, int]]:
        """Expire reservations still pending since before *cutoff*.

        Returns ``(tenant_id, declared_bytes)`` for every row expired.
        """
        up = StorageUploadTable
        stmt = (
            update(up)
            .where(up.state == UploadState.PENDING.value, up.created_at < cutoff)
            .values(state=UploadState.EXPIRED.value, settled_at=now)
            .returning(up.tenant_id, up.declared_bytes)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return [(tenant_id, int(nbytes)) for tenant_id, nbytes in result.all()]

    async def sum_confirmed_bytes(self, tenant_id: str) -> int:
        stmt = select(func.coalesce(func.sum(StorageUploadTable.actual_bytes), 0)).where(
            StorageUploadTable.tenant_id == tenant_id,
            StorageUploadTable.state == UploadState.CONFIRMED.value,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Insert-only log of processed Stripe events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, event_id: str) -> bool:
        stmt = select(WebhookEventTable.id).where(WebhookEventTable.event_id == event_id).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any] | None,
        note: str | None = None,
    ) -> WebhookEventTable:
        """Insert the processed marker.  Raises ``IntegrityError`` on a duplicate id."""
        row = WebhookEventTable(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            note=note,
            processed_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def count(self, event_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(WebhookEventTable)
        if event_id is not None:
            stmt = stmt.where(WebhookEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)
