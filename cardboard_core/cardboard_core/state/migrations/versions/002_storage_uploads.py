"""Persist upload reservations in storage_uploads.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "storage_uploads",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("object_key", sa.String(1024), nullable=True),
        sa.Column("declared_bytes", sa.BigInteger(), nullable=False),
        sa.Column("actual_bytes", sa.BigInteger(), nullable=True),
        sa.Column("state", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("declared_bytes > 0", name="ck_storage_uploads_declared_bytes"),
        sa.CheckConstraint("actual_bytes IS NULL OR actual_bytes >= 0", name="ck_storage_uploads_actual_bytes"),
    )
    op.create_index("ix_storage_uploads_tenant_state", "storage_uploads", ["tenant_id", "state"])
    op.create_index("ix_storage_uploads_key_state", "storage_uploads", ["object_key", "state"])
    op.create_index("ix_storage_uploads_state_created", "storage_uploads", ["state", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_storage_uploads_state_created", table_name="storage_uploads")
    op.drop_index("ix_storage_uploads_key_state", table_name="storage_uploads")
    op.drop_index("ix_storage_uploads_tenant_state", table_name="storage_uploads")
    op.drop_table("storage_uploads")
