"""Orchestration status slot table.

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates:
  - orchestration_status (one row per user: the latest status document)

Fresh install:
  alembic upgrade head
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── Status slot ───────────────────────────────────────────────────────
    op.create_table(
        "orchestration_status",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("document", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_orchestration_status_updated_at", "orchestration_status", ["updated_at"])


def downgrade() -> None:
    op.drop_index("ix_orchestration_status_updated_at", table_name="orchestration_status")
    op.drop_table("orchestration_status")
