"""Daily bias analysis routes."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from app.api.dependencies import require_user
from app.core.config import settings
from app.core.logging import get_logger
from app.core.security import TokenData
from app.repositories.analysis_runs_orm import AnalysisRunRecord
from app.schemas.daily_bias import (
    AnalysisHistoryResponse,
    AnalysisRunResponse,
    AnalyzeRequest,
    InstrumentsResponse,
)
from app.services.daily_bias import SUPPORTED_INSTRUMENTS, get_orchestrator, normalize_instrument


logger = get_logger("routes.daily_bias")

router = APIRouter(prefix="/daily-bias", tags=["Daily Bias"])


def _to_response(run: AnalysisRunRecord, cache_hit: bool = False) -> AnalysisRunResponse:
    return AnalysisRunResponse(**run.to_dict(), cache_hit=cache_hit)


@router.post(
    "/analyze",
    response_model=AnalysisRunResponse,
    summary="Run the daily bias pipeline",
    description=(
        "Runs the six-stage analysis for an instrument and trading day. "
        "A completed run for the same day is returned unless force_refresh is set."
    ),
)
async def analyze(
    payload: AnalyzeRequest,
    user: TokenData = Depends(require_user),
) -> AnalysisRunResponse:
    outcome = await get_orchestrator().run_daily_bias(
        user.sub,
        payload.instrument,
        payload.date,
        force_refresh=payload.force_refresh,
    )
    return _to_response(outcome.run, outcome.cache_hit)


@router.get("/history", response_model=AnalysisHistoryResponse, summary="Past analyses")
async def history(
    instrument: str | None = Query(default=None, max_length=20),
    limit: int = Query(default=30, ge=1, le=200),
    user: TokenData = Depends(require_user),
) -> AnalysisHistoryResponse:
    runs = await get_orchestrator().get_history(user.sub, instrument, limit)
    return AnalysisHistoryResponse(items=[_to_response(r) for r in runs], total=len(runs))


@router.get("/instruments", response_model=InstrumentsResponse, summary="Supported instruments")
async def instruments() -> InstrumentsResponse:
    return InstrumentsResponse(instruments=list(SUPPORTED_INSTRUMENTS))


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def analysis_events(
    user_id: str,
    instrument: str,
    poll_interval: float | None = None,
    max_seconds: float | None = None,
) -> AsyncIterator[str]:
    """Yield an ``analysis`` event for each newer completed run, heartbeats otherwise."""
    poll_interval = poll_interval if poll_interval is not None else settings.stream_poll_interval
    max_seconds = max_seconds if max_seconds is not None else settings.stream_max_seconds
    orchestrator = get_orchestrator()
    watermark = datetime.now(UTC)
    deadline = time.monotonic() + max_seconds

    while time.monotonic() < deadline:
        run = await orchestrator.has_newer_since(user_id, instrument, watermark)
        if run is not None:
            watermark = run.completed_at or datetime.now(UTC)
            yield _sse("analysis", _to_response(run).model_dump(mode="json"))
        else:
            yield ": heartbeat\n\n"
        await asyncio.sleep(poll_interval)

    yield _sse("close", {"reason": "timeout"})


@router.get(
    "/stream",
    summary="Stream new analyses",
    description="Server-Sent Events; emits `analysis` whenever a newer completed run appears.",
)
async def stream(
    instrument: str = Query(..., min_length=1, max_length=20),
    user: TokenData = Depends(require_user),
) -> StreamingResponse:
    symbol = normalize_instrument(instrument)
    logger.debug("Opening daily bias stream", extra={"user_id": user.sub, "instrument": symbol})
    return StreamingResponse(
        analysis_events(user.sub, symbol),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
