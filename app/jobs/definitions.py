"""Built-in job definitions.

Jobs:
- broker_sync: scheduled sync of every due broker connection
- broker_sync_connection: one connection, triggered manually
- broker_health_check: log alerts for unhealthy brokers
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from app.core.logging import get_logger

from .registry import register_job


logger = get_logger("jobs.definitions")

HEALTH_CHECK_WINDOW = timedelta(hours=24)


@register_job("broker_sync")
async def broker_sync_job() -> str:
    """Sync all ACTIVE connections whose interval has elapsed."""
    from app.services.brokers.scheduler import run_scheduled_sync

    result = await run_scheduled_sync()
    if result.skipped_locked:
        return "Skipped: another broker sync is running"
    return (
        f"Processed {result.connections_processed} connections: "
        f"{result.succeeded} ok, {result.partial} partial, {result.failed} failed, "
        f"{result.skipped} not due"
    )


@register_job("broker_sync_connection")
async def broker_sync_connection_job(connection_id: int, full: bool = False) -> str:
    from app.services.brokers.sync import get_sync_engine
    from app.services.brokers.types import SyncTrigger

    run = await get_sync_engine().sync_connection(connection_id, SyncTrigger.MANUAL, full=full)
    return f"Sync run {run.id} {run.status}: {run.trades_imported} imported, {run.trades_skipped} updated"


@register_job("broker_health_check")
async def broker_health_check_job() -> str:
    from app.services.brokers.monitoring import check_and_alert

    alerted = await check_and_alert(datetime.now(UTC) - HEALTH_CHECK_WINDOW)
    if alerted:
        return f"Alerted for {', '.join(alerted)}"
    return "All brokers healthy"
