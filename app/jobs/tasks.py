"""Celery tasks for background jobs."""

from __future__ import annotations

import asyncio
from typing import Any

import app.jobs.definitions  # noqa: F401 - register jobs
from app.celery_app import celery_app
from app.core.logging import get_logger
from app.jobs.base_task import ReliableTask
from app.jobs.executor import execute_job


logger = get_logger("jobs.celery_tasks")

# Per-worker event loop for Celery prefork pool
_worker_loop: asyncio.AbstractEventLoop | None = None


def _get_worker_loop() -> asyncio.AbstractEventLoop:
    """Get or create a persistent event loop for the worker process."""
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_worker_loop)
    return _worker_loop


def _run_async(coro: Any) -> Any:
    """Run a coroutine on the worker's persistent loop.

    A fresh loop per task would close the pooled async Valkey and
    database connections between runs.
    """
    return _get_worker_loop().run_until_complete(coro)


@celery_app.task(name="jobs.broker_sync")
def broker_sync_task() -> str:
    # Not retried: the scheduler lock and per-connection isolation already
    # cover transient failures and the next beat tick picks up the rest.
    return _run_async(execute_job("broker_sync"))


@celery_app.task(name="jobs.broker_sync_connection", base=ReliableTask, bind=True, max_retries=2)
def broker_sync_connection_task(self: ReliableTask, connection_id: int, full: bool = False) -> str:
    return _run_async(
        execute_job("broker_sync_connection", connection_id=connection_id, full=full)
    )


@celery_app.task(name="jobs.broker_health_check")
def broker_health_check_task() -> str:
    return _run_async(execute_job("broker_health_check"))
