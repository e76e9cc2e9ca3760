"""Analysis run repository using SQLAlchemy ORM.

Usage:
    from app.repositories import analysis_runs_orm as analysis_runs_repo
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import case, cast, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert

from app.core.logging import get_logger
from app.database.connection import get_session
from app.database.orm import AnalysisRun as AnalysisRunORM


logger = get_logger("repositories.analysis_runs_orm")

STAGE_COLUMNS = ("security", "macro", "flux", "mag7", "technical", "synthesis")


@dataclass
class AnalysisRunRecord:
    id: int
    user_id: str
    instrument: str
    analysis_date: date
    status: str = "RUNNING"
    security: dict[str, Any] | None = None
    macro: dict[str, Any] | None = None
    flux: dict[str, Any] | None = None
    mag7: dict[str, Any] | None = None
    technical: dict[str, Any] | None = None
    synthesis: dict[str, Any] | None = None
    stage_sources: dict[str, str] = field(default_factory=dict)
    bias: str | None = None
    confidence: float | None = None
    ai_provider: str | None = None
    processing_time_ms: int | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"

    @classmethod
    def from_orm(cls, row: AnalysisRunORM) -> AnalysisRunRecord:
        return cls(
            id=row.id,
            user_id=row.user_id,
            instrument=row.instrument,
            analysis_date=row.analysis_date,
            status=row.status,
            security=row.security,
            macro=row.macro,
            flux=row.flux,
            mag7=row.mag7,
            technical=row.technical,
            synthesis=row.synthesis,
            stage_sources=dict(row.stage_sources or {}),
            bias=row.bias,
            confidence=float(row.confidence) if row.confidence is not None else None,
            ai_provider=row.ai_provider,
            processing_time_ms=row.processing_time_ms,
            created_at=row.created_at,
            completed_at=row.completed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def get_run(user_id: str, instrument: str, analysis_date: date) -> AnalysisRunRecord | None:
    async with get_session() as session:
        result = await session.execute(
            select(AnalysisRunORM).where(
                AnalysisRunORM.user_id == user_id,
                AnalysisRunORM.instrument == instrument,
                AnalysisRunORM.analysis_date == analysis_date,
            )
        )
        row = result.scalar_one_or_none()
        return AnalysisRunRecord.from_orm(row) if row else None


async def start_run(user_id: str, instrument: str, analysis_date: date) -> AnalysisRunRecord:
    """
    Create the run, or open a new attempt on an existing one.

    Stage outputs of the attempt are staged in ``pending_stages`` and only
    replace the stored analysis in :func:`complete_run`, so a completed run
    stays COMPLETED and readable while it is being refreshed, and survives a
    refresh that fails.
    """
    now = datetime.now(UTC)

    async with get_session() as session:
        stmt = (
            insert(AnalysisRunORM)
            .values(
                user_id=user_id,
                instrument=instrument,
                analysis_date=analysis_date,
                status="RUNNING",
                stage_sources={},
                pending_stages={},
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                constraint="uq_analysis_runs_user_instrument_date",
                set_={
                    "status": case((AnalysisRunORM.status == "COMPLETED", "COMPLETED"), else_="RUNNING"),
                    "pending_stages": {},
                    "updated_at": now,
                },
            )
            .returning(AnalysisRunORM)
        )
        result = await session.execute(stmt)
        row = result.scalar_one()
        record = AnalysisRunRecord.from_orm(row)
        await session.commit()

    logger.debug(
        "Analysis run started",
        extra={"run_id": record.id, "instrument": instrument, "analysis_date": str(analysis_date)},
    )
    return record


async def save_stage(run_id: int, stage: str, output: dict[str, Any], source: str) -> None:
    if stage not in STAGE_COLUMNS:
        raise ValueError(f"Unknown stage: {stage}")

    staged = {stage: {"output": output, "source": source}}
    async with get_session() as session:
        # Merged in SQL so stages finishing concurrently don't overwrite each other
        result = await session.execute(
            update(AnalysisRunORM)
            .where(AnalysisRunORM.id == run_id)
            .values(
                pending_stages=AnalysisRunORM.pending_stages.op("||", return_type=JSONB)(cast(staged, JSONB)),
                updated_at=datetime.now(UTC),
            )
            .returning(AnalysisRunORM.id)
        )
        if result.scalar_one_or_none() is None:
            raise LookupError(f"Analysis run {run_id} not found")
        await session.commit()


async def complete_run(
    run_id: int,
    *,
    bias: str,
    confidence: float,
    ai_provider: str | None,
    processing_time_ms: int,
) -> AnalysisRunRecord:
    """Publish the staged stage outputs and the final bias in one commit."""
    now = datetime.now(UTC)
    async with get_session() as session:
        row = await session.get(AnalysisRunORM, run_id, with_for_update=True)
        if row is None:
            raise LookupError(f"Analysis run {run_id} not found")

        pending = row.pending_stages or {}
        sources: dict[str, str] = {}
        for stage in STAGE_COLUMNS:
            staged = pending.get(stage)
            setattr(row, stage, staged["output"] if staged else None)
            if staged:
                sources[stage] = staged["source"]

        row.stage_sources = sources
        row.pending_stages = {}
        row.status = "COMPLETED"
        row.bias = bias
        row.confidence = confidence
        row.ai_provider = ai_provider
        row.processing_time_ms = processing_time_ms
        row.completed_at = now
        row.updated_at = now
        record = AnalysisRunRecord.from_orm(row)
        await session.commit()
    return record


async def list_runs(user_id: str, instrument: str | None = None, limit: int = 30) -> list[AnalysisRunRecord]:
    async with get_session() as session:
        stmt = select(AnalysisRunORM).where(
            AnalysisRunORM.user_id == user_id,
            AnalysisRunORM.status == "COMPLETED",
        )
        if instrument:
            stmt = stmt.where(AnalysisRunORM.instrument == instrument)
        stmt = stmt.order_by(AnalysisRunORM.analysis_date.desc(), AnalysisRunORM.created_at.desc()).limit(limit)
        result = await session.execute(stmt)
        return [AnalysisRunRecord.from_orm(row) for row in result.scalars().all()]


async def get_latest_completed_since(
    user_id: str, instrument: str, since: datetime
) -> AnalysisRunRecord | None:
    async with get_session() as session:
        result = await session.execute(
            select(AnalysisRunORM)
            .where(
                AnalysisRunORM.user_id == user_id,
                AnalysisRunORM.instrument == instrument,
                AnalysisRunORM.status == "COMPLETED",
                AnalysisRunORM.completed_at > since,
            )
            .order_by(AnalysisRunORM.completed_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return AnalysisRunRecord.from_orm(row) if row else None
