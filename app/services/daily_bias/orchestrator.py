"""
Daily bias pipeline orchestrator.

Runs Security -> Macro -> Flux -> Mag7 -> Technical -> Synthesis for one
(user, instrument, date), persisting each stage as soon as it finishes.
A completed run for the same key is returned as-is unless a refresh is
forced; stage-level caches are honoured either way. Concurrent requests
for one key are serialized by a Valkey lock, so the analysis runs once.

Usage:
    from app.services.daily_bias import get_orchestrator

    outcome = await get_orchestrator().run_daily_bias("user-1", "NQ1")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Optional, Sequence

from app.cache.distributed_lock import DistributedLock
from app.core.config import settings
from app.core.exceptions import (
    ConfigurationError,
    ConflictError,
    RateLimitError,
    UnsupportedInstrumentError,
    UpstreamUnavailableError,
    ValidationError,
)
from app.core.logging import get_logger
from app.repositories import analysis_runs_orm as analysis_runs_repo
from app.repositories.analysis_runs_orm import AnalysisRunRecord
from app.services.ai.gateway import AIGateway, get_ai_gateway

from .base import AnalysisStage, StageContext, StageResult, StageSource
from .flux import FluxStage
from .instruments import SUPPORTED_INSTRUMENTS, normalize_instrument
from .macro import MacroStage
from .mag7 import Mag7Stage
from .security import SecurityStage
from .synthesis import SynthesisStage
from .technical import TechnicalStage


logger = get_logger("daily_bias.orchestrator")

STAGE_ORDER = ("security", "macro", "flux", "mag7", "technical", "synthesis")
PARALLEL_STAGES = ("macro", "flux", "mag7", "technical")

CONFIDENCE_PENALTIES = {
    StageSource.DEGRADED: 0.10,
    StageSource.FALLBACK: 0.15,
}


@dataclass
class DailyBiasOutcome:
    run: AnalysisRunRecord
    cache_hit: bool
    stages: dict[str, StageResult] = field(default_factory=dict)


def parse_analysis_date(value: date | str | None, today: date | None = None) -> date:
    """Default to today (UTC); reject malformed and future dates."""
    today = today or datetime.now(UTC).date()
    if value is None:
        return today
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(f"Invalid analysis date: {value!r}", details={"date": value}) from e
    if value > today:
        raise ValidationError(
            "Analysis date cannot be in the future",
            details={"date": value.isoformat(), "today": today.isoformat()},
        )
    return value


def apply_confidence_penalties(confidence: float, stages: dict[str, StageResult]) -> float:
    penalty = sum(
        CONFIDENCE_PENALTIES.get(result.source, 0.0)
        for name, result in stages.items()
        if name != "synthesis"
    )
    return round(max(0.0, min(1.0, confidence - penalty)), 4)


def default_stages(gateway: AIGateway | None = None) -> list[AnalysisStage]:
    return [
        SecurityStage(gateway=gateway),
        MacroStage(gateway=gateway),
        FluxStage(gateway=gateway),
        Mag7Stage(gateway=gateway),
        TechnicalStage(gateway=gateway),
        SynthesisStage(gateway=gateway),
    ]


class DailyBiasOrchestrator:
    def __init__(
        self,
        stages: Optional[Sequence[AnalysisStage]] = None,
        gateway: AIGateway | None = None,
        parallel: bool | None = None,
    ):
        self._gateway = gateway
        self.stages = {stage.name: stage for stage in (stages or default_stages(gateway))}
        missing = [name for name in STAGE_ORDER if name not in self.stages]
        if missing:
            raise ValueError(f"Missing analysis stages: {missing}")
        self.parallel = settings.daily_bias_parallel_stages if parallel is None else parallel

    @property
    def gateway(self) -> AIGateway:
        return self._gateway or get_ai_gateway()

    async def run_daily_bias(
        self,
        user_id: str,
        instrument: str,
        analysis_date: date | str | None = None,
        force_refresh: bool = False,
    ) -> DailyBiasOutcome:
        symbol = normalize_instrument(instrument)
        if symbol not in SUPPORTED_INSTRUMENTS:
            raise UnsupportedInstrumentError(
                f"Instrument {instrument!r} is not supported",
                details={"supported": list(SUPPORTED_INSTRUMENTS)},
            )
        day = parse_analysis_date(analysis_date)
        requested_at = datetime.now(UTC)

        if not force_refresh:
            existing = await analysis_runs_repo.get_run(user_id, symbol, day)
            if existing is not None and existing.is_completed:
                return self._completed(existing)

        if not self.gateway.providers:
            raise ConfigurationError(
                "No AI provider API key configured",
                error_code="MISSING_AI_PROVIDER_KEY",
            )
        if not self.gateway.any_healthy():
            raise UpstreamUnavailableError(
                "No AI provider is currently available",
                details={"providers": self.gateway.get_health()},
            )

        lock = DistributedLock(
            f"daily_bias:run:{user_id}:{symbol}:{day.isoformat()}",
            timeout=settings.daily_bias_run_lock_timeout,
            blocking=True,
            blocking_timeout=settings.daily_bias_run_lock_wait,
        )
        try:
            acquired = await lock.acquire()
        except Exception as e:
            logger.warning(
                f"Daily bias run lock unavailable, analysing without it: {e}",
                extra={"user_id": user_id, "instrument": symbol},
            )
            return await self._analyze(user_id, symbol, day)

        if not acquired:
            raise ConflictError(
                "An analysis for this instrument and date is already in progress",
                error_code="ANALYSIS_IN_PROGRESS",
                details={"instrument": symbol, "date": day.isoformat()},
            )
        try:
            # Whoever held the lock may have just finished the same analysis
            existing = await analysis_runs_repo.get_run(user_id, symbol, day)
            if (
                existing is not None
                and existing.is_completed
                and (not force_refresh or existing.completed_at >= requested_at)
            ):
                return self._completed(existing)
            return await self._analyze(user_id, symbol, day)
        finally:
            await lock.release()

    @staticmethod
    def _completed(run: AnalysisRunRecord) -> DailyBiasOutcome:
        logger.info(
            "Returning completed daily bias",
            extra={
                "user_id": run.user_id,
                "instrument": run.instrument,
                "analysis_date": run.analysis_date.isoformat(),
            },
        )
        return DailyBiasOutcome(run=run, cache_hit=True)

    async def _analyze(self, user_id: str, symbol: str, day: date) -> DailyBiasOutcome:
        started = time.monotonic()
        run = await analysis_runs_repo.start_run(user_id, symbol, day)
        ctx = StageContext(instrument=symbol, analysis_date=day, user_id=user_id)

        await self._run_stage(run.id, "security", ctx)
        if self.parallel:
            await asyncio.gather(*(self._run_stage(run.id, name, ctx) for name in PARALLEL_STAGES))
        else:
            for name in PARALLEL_STAGES:
                await self._run_stage(run.id, name, ctx)

        missing = [name for name in STAGE_ORDER[:-1] if name not in ctx.upstream]
        if missing:
            raise RuntimeError(f"Synthesis started without upstream stages: {missing}")
        synthesis = await self._run_stage(run.id, "synthesis", ctx)

        stages = {**ctx.upstream, "synthesis": synthesis}
        output = synthesis.output
        confidence = apply_confidence_penalties(output.confidence, stages)
        provider = next(
            (r.provider for r in reversed(list(stages.values())) if r.provider),
            None,
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)

        completed = await analysis_runs_repo.complete_run(
            run.id,
            bias=output.final_bias,
            confidence=confidence,
            ai_provider=provider,
            processing_time_ms=elapsed_ms,
        )
        logger.info(
            "Daily bias completed",
            extra={
                "run_id": run.id,
                "instrument": symbol,
                "bias": output.final_bias,
                "confidence": confidence,
                "sources": {name: r.source.value for name, r in stages.items()},
                "duration_ms": elapsed_ms,
            },
        )
        return DailyBiasOutcome(run=completed, cache_hit=False, stages=stages)

    async def _run_stage(self, run_id: int, name: str, ctx: StageContext) -> StageResult:
        stage = self.stages[name]
        try:
            result = await stage.analyze(ctx)
        except (RateLimitError, ConfigurationError):
            raise
        except Exception as e:
            logger.exception(
                f"Stage {name} failed unexpectedly, using fallback",
                extra={"stage": name, "instrument": ctx.instrument},
            )
            output = await stage.degraded_output(ctx, str(e))
            result = StageResult(
                stage=name,
                output=output,
                source=StageSource.FALLBACK,
                cache_key=stage.cache_key(ctx),
                errors=[str(e)],
            )

        if name != "synthesis":
            ctx.upstream[name] = result
        await analysis_runs_repo.save_stage(run_id, name, result.output_dict(), result.source.value)
        return result

    async def get_history(
        self, user_id: str, instrument: str | None = None, limit: int = 30
    ) -> list[AnalysisRunRecord]:
        symbol = normalize_instrument(instrument) if instrument else None
        return await analysis_runs_repo.list_runs(user_id, symbol, limit)

    async def has_newer_since(
        self, user_id: str, instrument: str, watermark: datetime
    ) -> AnalysisRunRecord | None:
        return await analysis_runs_repo.get_latest_completed_since(
            user_id, normalize_instrument(instrument), watermark
        )


_orchestrator: Optional[DailyBiasOrchestrator] = None


def get_orchestrator() -> DailyBiasOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = DailyBiasOrchestrator()
    return _orchestrator
