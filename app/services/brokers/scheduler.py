"""
Scheduled broker sync.

A non-blocking distributed lock keeps overlapping triggers (cron, manual
endpoint, several workers) from running at once; the loser returns an
all-zero result flagged ``skipped_locked``. Due connections run under a
semaphore and every sync is isolated from the others.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from app.cache.cache import Cache
from app.cache.distributed_lock import DistributedLock
from app.core.config import settings
from app.core.logging import get_logger
from app.repositories import broker_connections_orm as connections_repo
from app.repositories.broker_connections_orm import BrokerConnectionRecord

from .monitoring import get_all_broker_health_status
from .sync import BrokerSyncEngine, get_sync_engine, stale_sync_cutoff
from .types import SyncStatus, SyncTrigger


logger = get_logger("brokers.scheduler")

LOCK_NAME = "broker_sync_scheduler"
LOCK_TIMEOUT = 30 * 60
LAST_RUN_KEY = "last_run"
HEALTH_WINDOW = timedelta(hours=24)

_state = Cache(prefix="broker_scheduler", default_ttl=7 * 24 * 3600)


@dataclass
class SchedulerResult:
    connections_processed: int = 0
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    skipped: int = 0
    skipped_locked: bool = False
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def next_due_at(connection: BrokerConnectionRecord) -> Optional[datetime]:
    if connection.last_sync_at is None:
        return None
    return connection.last_sync_at + timedelta(minutes=connection.sync_interval_minutes)


def is_due(connection: BrokerConnectionRecord, now: datetime) -> bool:
    due = next_due_at(connection)
    return due is None or due <= now


async def _sync_isolated(
    engine: BrokerSyncEngine, connection: BrokerConnectionRecord, semaphore: asyncio.Semaphore
) -> str:
    async with semaphore:
        try:
            run = await engine.sync_connection(connection.id, SyncTrigger.SCHEDULED)
            return run.status
        except Exception:
            logger.exception(
                "Scheduled sync raised",
                extra={"connection_id": connection.id, "broker": connection.broker_type},
            )
            return SyncStatus.FAILED.value


async def run_scheduled_sync(
    engine: BrokerSyncEngine | None = None,
    now: datetime | None = None,
) -> SchedulerResult:
    lock = DistributedLock(LOCK_NAME, timeout=LOCK_TIMEOUT, blocking=False)
    if not await lock.acquire():
        logger.info("Scheduled broker sync already running, skipping")
        return SchedulerResult(skipped_locked=True)

    started = time.monotonic()
    result = SchedulerResult()
    try:
        engine = engine or get_sync_engine()
        now = now or datetime.now(UTC)
        connections = await connections_repo.list_active_connections(stale_sync_cutoff(now))
        due = [c for c in connections if is_due(c, now)]
        result.skipped = len(connections) - len(due)

        semaphore = asyncio.Semaphore(settings.broker_sync_max_concurrency)
        statuses = await asyncio.gather(*(_sync_isolated(engine, c, semaphore) for c in due))

        result.connections_processed = len(due)
        result.succeeded = statuses.count(SyncStatus.SUCCESS.value)
        result.partial = statuses.count(SyncStatus.PARTIAL.value)
        result.failed = len(statuses) - result.succeeded - result.partial
    finally:
        await lock.release()

    result.duration_ms = int((time.monotonic() - started) * 1000)
    await _state.set(LAST_RUN_KEY, result.to_dict())
    logger.info("Scheduled broker sync finished", extra=result.to_dict())
    return result


async def get_scheduler_status() -> dict[str, Any]:
    last_run = await _state.get(LAST_RUN_KEY)
    connections = await connections_repo.list_active_connections()
    health = await get_all_broker_health_status(datetime.now(UTC) - HEALTH_WINDOW)
    return {
        "last_run": last_run,
        "connections": [
            {
                "connection_id": c.id,
                "broker_type": c.broker_type,
                "last_sync_at": c.last_sync_at.isoformat() if c.last_sync_at else None,
                "last_sync_status": c.last_sync_status,
                "next_due_at": due.isoformat() if (due := next_due_at(c)) else None,
            }
            for c in connections
        ],
        "brokers": [h.to_dict() for h in health],
    }
