"""Sync run repository (append-only log of sync attempts)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update

from app.database.connection import get_session
from app.database.orm import SyncRun as SyncRunORM


@dataclass
class SyncRunRecord:
    id: int
    connection_id: int
    broker_type: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    trades_imported: int = 0
    trades_skipped: int = 0
    error_code: str | None = None
    error_detail: str | None = None
    duration_ms: int | None = None

    @classmethod
    def from_orm(cls, row: SyncRunORM) -> SyncRunRecord:
        return cls(
            id=row.id,
            connection_id=row.connection_id,
            broker_type=row.broker_type,
            trigger=row.trigger,
            status=row.status,
            started_at=row.started_at,
            finished_at=row.finished_at,
            trades_imported=row.trades_imported or 0,
            trades_skipped=row.trades_skipped or 0,
            error_code=row.error_code,
            error_detail=row.error_detail,
            duration_ms=row.duration_ms,
        )


async def create_sync_run(connection_id: int, broker_type: str, trigger: str) -> SyncRunRecord:
    async with get_session() as session:
        row = SyncRunORM(
            connection_id=connection_id,
            broker_type=broker_type,
            trigger=trigger,
            status="RUNNING",
            started_at=datetime.now(UTC),
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        return SyncRunRecord.from_orm(row)


async def finalize_sync_run(
    run_id: int,
    *,
    status: str,
    trades_imported: int,
    trades_skipped: int,
    error_code: str | None,
    error_detail: str | None,
    duration_ms: int,
) -> SyncRunRecord | None:
    """Finalize a RUNNING run. Returns None if it was already finalized."""
    async with get_session() as session:
        result = await session.execute(
            update(SyncRunORM)
            .where(SyncRunORM.id == run_id, SyncRunORM.status == "RUNNING")
            .values(
                status=status,
                trades_imported=trades_imported,
                trades_skipped=trades_skipped,
                error_code=error_code,
                error_detail=error_detail[:2000] if error_detail else None,
                duration_ms=duration_ms,
                finished_at=datetime.now(UTC),
            )
            .returning(SyncRunORM)
        )
        row = result.scalar_one_or_none()
        await session.commit()
        return SyncRunRecord.from_orm(row) if row else None


async def list_runs_since(since: datetime, broker_type: str | None = None) -> list[SyncRunRecord]:
    async with get_session() as session:
        stmt = select(SyncRunORM).where(SyncRunORM.started_at >= since)
        if broker_type:
            stmt = stmt.where(SyncRunORM.broker_type == broker_type)
        result = await session.execute(stmt.order_by(SyncRunORM.started_at))
        return [SyncRunRecord.from_orm(row) for row in result.scalars().all()]


async def list_recent_runs(connection_id: int, limit: int = 20) -> list[SyncRunRecord]:
    async with get_session() as session:
        result = await session.execute(
            select(SyncRunORM)
            .where(SyncRunORM.connection_id == connection_id)
            .order_by(SyncRunORM.started_at.desc())
            .limit(limit)
        )
        return [SyncRunRecord.from_orm(row) for row in result.scalars().all()]
