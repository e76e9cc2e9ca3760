"""Pending stage outputs and broker pairing cursor.

Revision ID: 002_pending_stages_pairing_cursor
Revises: 001_baseline
Create Date: 2026-10-18

analysis_runs.pending_stages holds the stages of a re-analysis until it
completes, so a forced refresh never clears a completed run.
broker_connections.pairing_cursor records where incremental fill fetches
resume.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002_pending_stages_pairing_cursor"
down_revision: Union[str, None] = "001_baseline"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "analysis_runs",
        sa.Column(
            "pending_stages",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.add_column("broker_connections", sa.Column("pairing_cursor", postgresql.JSONB()))
    op.create_index(
        "ix_broker_connections_status_updated",
        "broker_connections",
        ["status", "updated_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_broker_connections_status_updated", table_name="broker_connections")
    op.drop_column("broker_connections", "pairing_cursor")
    op.drop_column("analysis_runs", "pending_stages")
