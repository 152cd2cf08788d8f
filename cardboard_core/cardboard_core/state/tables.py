"""SQLAlchemy 2.0 ORM table definitions for the Cardboard state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

The tenant account row is the single shared mutable record for quota
accounting: running counters, storage bytes and subscription state all live
on it so that every mutation is a single-row update.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite stores timestamps without an offset and hands back naive values;
    those are re-tagged as UTC on load so comparisons against
    :func:`_utcnow` never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all Cardboard tables."""


# ---------------------------------------------------------------------------
# Tenant accounts
# ---------------------------------------------------------------------------


class TenantAccountTable(Base):
    """Per-tenant billing profile and usage counters.

    ``board_count`` / ``card_count`` / ``confirmed_storage_bytes`` are
    running counters maintained on every mutation and periodically
    overwritten from ground truth by reconciliation.
    ``pending_storage_bytes`` holds in-flight upload reservations.
    """

    __tablename__ = "tenant_accounts"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    subscription_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    board_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    card_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmed_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_storage_sync: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    counters_last_reconciled: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    storage_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tenant_accounts_email", "email"),
        Index("ix_tenant_accounts_reconciled", "counters_last_reconciled"),
        Index("ix_tenant_accounts_pending", "pending_storage_bytes", "last_storage_sync"),
        CheckConstraint("board_count >= 0", name="ck_tenant_accounts_board_count"),
        CheckConstraint("card_count >= 0", name="ck_tenant_accounts_card_count"),
        CheckConstraint("confirmed_storage_bytes >= 0", name="ck_tenant_accounts_confirmed_storage"),
        CheckConstraint("pending_storage_bytes >= 0", name="ck_tenant_accounts_pending_storage"),
    )


# ---------------------------------------------------------------------------
# Boards and cards
# ---------------------------------------------------------------------------


class BoardTable(Base):
    """A canvas owned by a single tenant.  Soft-deleted via ``deleted_at``."""

    __tablename__ = "boards"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="Untitled Board")
    color: Mapped[str] = mapped_column(String(32), nullable=False, default="#ffffff")
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_board_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (Index("ix_boards_owner_deleted", "owner_id", "deleted_at"),)


class CardTable(Base):
    """A canvas element.  ``payload`` holds the kind-specific fields.

    ``storage_bytes`` is the verified size of the upload an image or file
    card points at, copied from ``storage_uploads`` when the card is
    created.  It is informational: quota is charged per upload, not per card.
    """

    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    board_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_cards_board", "board_id"),
        Index("ix_cards_owner_deleted", "owner_id", "deleted_at"),
        CheckConstraint("storage_bytes >= 0", name="ck_cards_storage_bytes"),
    )


# ---------------------------------------------------------------------------
# Storage uploads
# ---------------------------------------------------------------------------


class UploadState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"
    DELETED = "deleted"


class StorageUploadTable(Base):
    """One board upload and the storage reservation behind it.

    The row is written in ``pending`` state, with the declared size, in the
    same transaction that adds those bytes to the owner's
    ``pending_storage_bytes``.  It leaves ``pending`` exactly once:

    * ``confirmed`` when completion verified the object; ``actual_bytes``
      holds the size read back from the blob store and is what the owner
      is charged.
    * ``released`` when the upload was missing or rejected.
    * ``expired`` when the stale sweep gave up on it.

    A confirmed upload becomes ``deleted`` once its object is removed or
    overwritten.  Confirmed rows are the ground truth for storage usage.
    """

    __tablename__ = "storage_uploads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    object_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    declared_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actual_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=UploadState.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_storage_uploads_tenant_state", "tenant_id", "state"),
        Index("ix_storage_uploads_key_state", "object_key", "state"),
        Index("ix_storage_uploads_state_created", "state", "created_at"),
        CheckConstraint("declared_bytes > 0", name="ck_storage_uploads_declared_bytes"),
        CheckConstraint("actual_bytes IS NULL OR actual_bytes >= 0", name="ck_storage_uploads_actual_bytes"),
    )


# ---------------------------------------------------------------------------
# Stripe webhook events
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """Processed Stripe events.  Insert-only; the unique ``event_id`` is the
    idempotency guard for redelivered events."""

    __tablename__ = "stripe_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_stripe_webhook_events_event_id"),
        Index("ix_stripe_webhook_events_type", "event_type"),
    )
