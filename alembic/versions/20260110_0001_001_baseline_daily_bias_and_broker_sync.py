"""Baseline schema: daily bias analysis runs and broker sync.

Revision ID: 001_baseline
Revises:
Create Date: 2026-01-10

Creates analysis_runs, broker_connections, sync_runs and trades.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ==========================================================================
    # DAILY BIAS
    # ==========================================================================

    op.create_table(
        "analysis_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("instrument", sa.String(20), nullable=False),
        sa.Column("analysis_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="RUNNING"),
        sa.Column("security", postgresql.JSONB()),
        sa.Column("macro", postgresql.JSONB()),
        sa.Column("flux", postgresql.JSONB()),
        sa.Column("mag7", postgresql.JSONB()),
        sa.Column("technical", postgresql.JSONB()),
        sa.Column("synthesis", postgresql.JSONB()),
        sa.Column(
            "stage_sources",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("bias", sa.String(10)),
        sa.Column("confidence", sa.Numeric(5, 4)),
        sa.Column("ai_provider", sa.String(20)),
        sa.Column("processing_time_ms", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint(
            "user_id", "instrument", "analysis_date", name="uq_analysis_runs_user_instrument_date"
        ),
    )
    op.create_index(
        "ix_analysis_runs_user_instrument_created",
        "analysis_runs",
        ["user_id", "instrument", "created_at"],
    )

    # ==========================================================================
    # BROKER SYNC
    # ==========================================================================

    op.create_table(
        "broker_connections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("broker_type", sa.String(20), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("encrypted_credentials", sa.Text(), nullable=False),
        sa.Column("token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("sync_interval_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("sync_watermark", sa.DateTime(timezone=True)),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("last_sync_status", sa.String(20)),
        sa.Column("consecutive_auth_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # One live connection per account; disabled rows are kept for history
    op.create_index(
        "uq_broker_connections_user_broker_account_live",
        "broker_connections",
        ["user_id", "broker_type", "account_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'DISABLED'"),
    )
    op.create_index(
        "ix_broker_connections_status_last_sync",
        "broker_connections",
        ["status", "last_sync_at"],
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "connection_id",
            sa.Integer(),
            sa.ForeignKey("broker_connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("broker_type", sa.String(20), nullable=False),
        sa.Column("trigger", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="RUNNING"),
        sa.Column("trades_imported", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trades_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(40)),
        sa.Column("error_detail", sa.Text()),
        sa.Column("duration_ms", sa.Integer()),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_sync_runs_broker_started", "sync_runs", ["broker_type", "started_at"])
    op.create_index("ix_sync_runs_connection_started", "sync_runs", ["connection_id", "started_at"])

    op.create_table(
        "trades",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "connection_id",
            sa.Integer(),
            sa.ForeignKey("broker_connections.id", ondelete="SET NULL"),
        ),
        sa.Column("broker_type", sa.String(20), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("broker_trade_id", sa.String(128), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("direction", sa.String(5), nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("entry_price", sa.Numeric(18, 6), nullable=False),
        sa.Column("exit_price", sa.Numeric(18, 6), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("realized_pnl", sa.Numeric(18, 6), nullable=False),
        sa.Column("fees", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("raw", postgresql.JSONB()),
        sa.Column("imported_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("account_id", "broker_trade_id", name="uq_trades_account_broker_trade"),
    )
    op.create_index("ix_trades_user_closed", "trades", ["user_id", "closed_at"])


def downgrade() -> None:
    op.drop_table("trades")
    op.drop_table("sync_runs")
    op.drop_index("uq_broker_connections_user_broker_account_live", table_name="broker_connections")
    op.drop_table("broker_connections")
    op.drop_table("analysis_runs")
