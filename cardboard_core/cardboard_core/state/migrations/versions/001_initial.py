"""Initial schema: tenant accounts, boards, cards and Stripe webhook events.

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "tenant_accounts",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True, unique=True),
        sa.Column("stripe_subscription_id", sa.String(256), nullable=True),
        sa.Column("subscription_tier", sa.String(32), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(32), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("board_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("card_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("confirmed_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("pending_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_storage_sync", sa.DateTime(timezone=True), nullable=True),
        sa.Column("counters_last_reconciled", sa.DateTime(timezone=True), nullable=True),
        sa.Column("storage_flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("board_count >= 0", name="ck_tenant_accounts_board_count"),
        sa.CheckConstraint("card_count >= 0", name="ck_tenant_accounts_card_count"),
        sa.CheckConstraint("confirmed_storage_bytes >= 0", name="ck_tenant_accounts_confirmed_storage"),
        sa.CheckConstraint("pending_storage_bytes >= 0", name="ck_tenant_accounts_pending_storage"),
    )
    op.create_index("ix_tenant_accounts_email", "tenant_accounts", ["email"])
    op.create_index("ix_tenant_accounts_reconciled", "tenant_accounts", ["counters_last_reconciled"])
    op.create_index("ix_tenant_accounts_pending", "tenant_accounts", ["pending_storage_bytes", "last_storage_sync"])

    op.create_table(
        "boards",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=False, server_default="Untitled Board"),
        sa.Column("color", sa.String(32), nullable=False, server_default="#ffffff"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("parent_board_id", sa.String(64), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_boards_owner_deleted", "boards", ["owner_id", "deleted_at"])

    op.create_table(
        "cards",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("board_id", sa.String(64), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("payload", _json, nullable=False),
        sa.Column("storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("storage_bytes >= 0", name="ck_cards_storage_bytes"),
    )
    op.create_index("ix_cards_board", "cards", ["board_id"])
    op.create_index("ix_cards_owner_deleted", "cards", ["owner_id", "deleted_at"])

    op.create_table(
        "stripe_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(256), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("payload", _json, nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.UniqueConstraint("event_id", name="uq_stripe_webhook_events_event_id"),
    )
    op.create_index("ix_stripe_webhook_events_type", "stripe_webhook_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_stripe_webhook_events_type", table_name="stripe_webhook_events")
    op.drop_table("stripe_webhook_events")
    op.drop_index("ix_cards_owner_deleted", table_name="cards")
    op.drop_index("ix_cards_board", table_name="cards")
    op.drop_table("cards")
    op.drop_index("ix_boards_owner_deleted", table_name="boards")
    op.drop_table("boards")
    op.drop_index("ix_tenant_accounts_pending", table_name="tenant_accounts")
    op.drop_index("ix_tenant_accounts_reconciled", table_name="tenant_accounts")
    op.drop_index("ix_tenant_accounts_email", table_name="tenant_accounts")
    op.drop_table("tenant_accounts")
