"""Scheduler trigger routes, authenticated with the shared scheduler secret."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from app.api.dependencies import require_scheduler
from app.jobs.dispatch import get_task_status
from app.schemas.broker import SchedulerRunResponse
from app.services.brokers.scheduler import get_scheduler_status, run_scheduled_sync


router = APIRouter(prefix="/scheduler", tags=["Scheduler"], dependencies=[Depends(require_scheduler)])


@router.post(
    "/sync",
    response_model=SchedulerRunResponse,
    summary="Run the broker sync scheduler",
    description="Syncs every due connection. Returns immediately with skipped_locked if a run is in progress.",
)
async def trigger_sync() -> SchedulerRunResponse:
    result = await run_scheduled_sync()
    return SchedulerRunResponse(**result.to_dict())


@router.get("/status", summary="Scheduler status")
async def status() -> dict:
    return await get_scheduler_status()


@router.get("/tasks/{task_id}", summary="Background task status")
async def task_status(task_id: str = Path(..., min_length=1, max_length=64)) -> dict:
    return get_task_status(task_id)
