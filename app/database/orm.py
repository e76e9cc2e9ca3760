"""SQLAlchemy ORM models for TradeJournal.

Four tables back the analysis pipeline and the broker sync engine:

* ``analysis_runs``: one row per (user, instrument, day) with each stage's
  validated output as JSONB.
* ``broker_connections``: linked broker accounts with encrypted credentials.
* ``sync_runs``: append-only log of sync attempts.
* ``trades``: imported closed trades, unique per (account_id, broker_trade_id).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Deterministic constraint names for Alembic
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# DAILY BIAS
# =============================================================================


class AnalysisRun(Base):
    """Daily bias analysis for one user, instrument and trading day."""
    __tablename__ = "analysis_runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument: Mapped[str] = mapped_column(String(20), nullable=False)
    analysis_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="RUNNING")

    security: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    macro: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    flux: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    mag7: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    technical: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    synthesis: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    stage_sources: Mapped[dict[str, str]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    # Stage outputs of the analysis in progress; moved into the stage columns on completion
    pending_stages: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )

    bias: Mapped[str | None] = mapped_column(String(10))
    confidence: Mapped[float | None] = mapped_column(Numeric(5, 4, asdecimal=False))
    ai_provider: Mapped[str | None] = mapped_column(String(20))
    processing_time_ms: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("user_id", "instrument", "analysis_date", name="uq_analysis_runs_user_instrument_date"),
        Index("ix_analysis_runs_user_instrument_created", "user_id", "instrument", "created_at"),
    )


# =============================================================================
# BROKER SYNC
# =============================================================================


class BrokerConnection(Base):
    """A linked broker account. Credentials are Fernet encrypted JSON."""
    __tablename__ = "broker_connections"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    broker_type: Mapped[str] = mapped_column(String(20), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_credentials: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    sync_watermark: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pairing_cursor: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_status: Mapped[str | None] = mapped_column(String(20))
    consecutive_auth_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index(
            "uq_broker_connections_user_broker_account_live",
            "user_id",
            "broker_type",
            "account_id",
            unique=True,
            postgresql_where=text("status <> 'DISABLED'"),
        ),
        Index("ix_broker_connections_status_last_sync", "status", "last_sync_at"),
        Index("ix_broker_connections_status_updated", "status", "updated_at"),
    )


class SyncRun(Base):
    """One sync attempt; created RUNNING and finalized exactly once."""
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("broker_connections.id", ondelete="CASCADE"), nullable=False
    )
    broker_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="RUNNING")
    trades_imported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trades_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(40))
    error_detail: Mapped[str | None] = mapped_column(Text)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_sync_runs_broker_started", "broker_type", "started_at"),
        Index("ix_sync_runs_connection_started", "connection_id", "started_at"),
    )


class Trade(Base):
    """A closed round-trip trade imported from a broker."""
    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[int | None] = mapped_column(
        ForeignKey("broker_connections.id", ondelete="SET NULL")
    )
    broker_type: Mapped[str] = mapped_column(String(20), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    broker_trade_id: Mapped[str] = mapped_column(String(128), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(5), nullable=False)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    exit_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    fees: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=0)
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    imported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "broker_trade_id", name="uq_trades_account_broker_trade"),
        Index("ix_trades_user_closed", "user_id", "closed_at"),
    )
