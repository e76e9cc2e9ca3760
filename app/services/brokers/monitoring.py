"""
Broker sync monitoring.

Metrics are pure aggregations over SyncRun rows; health is a threshold
classification of the success rate. Alerts are log records at ERROR level
with a per-broker cooldown kept in Valkey.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterable, Optional

from app.cache.client import get_valkey_client
from app.core.config import settings
from app.core.logging import get_logger
from app.repositories import sync_runs_orm as sync_runs_repo
from app.repositories.sync_runs_orm import SyncRunRecord

from .types import BrokerType, SyncStatus


logger = get_logger("brokers.monitoring")

ALERT_PREFIX = "tradejournal:broker_alert"
CONNECTION_METRICS_WINDOW = 20


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


@dataclass
class BrokerMetrics:
    broker_type: str
    total_runs: int = 0
    successful: int = 0
    partial: int = 0
    failed: int = 0
    success_rate: float = 0.0
    average_latency_ms: float = 0.0
    average_trades_imported: float = 0.0
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "broker_type": self.broker_type,
            "total_runs": self.total_runs,
            "successful": self.successful,
            "partial": self.partial,
            "failed": self.failed,
            "success_rate": round(self.success_rate, 4),
            "average_latency_ms": round(self.average_latency_ms, 1),
            "average_trades_imported": round(self.average_trades_imported, 2),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_error": self.last_error,
        }


@dataclass
class BrokerHealth:
    broker_type: str
    status: HealthStatus
    reason: str
    metrics: BrokerMetrics

    def to_dict(self) -> dict[str, Any]:
        return {
            "broker_type": self.broker_type,
            "status": self.status.value,
            "reason": self.reason,
            "metrics": self.metrics.to_dict(),
        }


def aggregate_sync_runs(broker_type: str, runs: Iterable[SyncRunRecord]) -> BrokerMetrics:
    """Aggregate finished runs; RUNNING rows are ignored."""
    finished = [r for r in runs if r.status != SyncStatus.RUNNING.value]
    metrics = BrokerMetrics(broker_type=broker_type, total_runs=len(finished))
    if not finished:
        return metrics

    metrics.successful = sum(1 for r in finished if r.status == SyncStatus.SUCCESS.value)
    metrics.partial = sum(1 for r in finished if r.status == SyncStatus.PARTIAL.value)
    metrics.failed = sum(1 for r in finished if r.status == SyncStatus.FAILED.value)
    metrics.success_rate = metrics.successful / len(finished)

    timed = [r.duration_ms for r in finished if r.duration_ms is not None]
    metrics.average_latency_ms = sum(timed) / len(timed) if timed else 0.0
    metrics.average_trades_imported = sum(r.trades_imported for r in finished) / len(finished)

    latest = max(finished, key=lambda r: r.started_at)
    metrics.last_sync_at = latest.finished_at or latest.started_at
    errors = [r for r in finished if r.error_code]
    if errors:
        last_failed = max(errors, key=lambda r: r.started_at)
        metrics.last_error = f"{last_failed.error_code}: {last_failed.error_detail or ''}".strip(": ")
    return metrics


def classify_health(metrics: BrokerMetrics) -> BrokerHealth:
    if metrics.total_runs < settings.broker_health_min_runs:
        return BrokerHealth(
            metrics.broker_type,
            HealthStatus.HEALTHY,
            f"insufficient data ({metrics.total_runs}/{settings.broker_health_min_runs} runs)",
            metrics,
        )
    rate = metrics.success_rate
    if rate >= settings.broker_health_healthy_threshold:
        status, reason = HealthStatus.HEALTHY, "success rate within target"
    elif rate >= settings.broker_health_degraded_threshold:
        status, reason = HealthStatus.DEGRADED, "success rate below target, investigate recent failures"
    else:
        status, reason = HealthStatus.UNHEALTHY, "success rate critically low"
    return BrokerHealth(metrics.broker_type, status, reason, metrics)


async def calculate_broker_metrics(broker_type: str, since: datetime) -> BrokerMetrics:
    runs = await sync_runs_repo.list_runs_since(since, broker_type)
    return aggregate_sync_runs(broker_type, runs)


async def get_all_broker_health_status(since: datetime) -> list[BrokerHealth]:
    runs = await sync_runs_repo.list_runs_since(since)
    by_broker: dict[str, list[SyncRunRecord]] = {b.value: [] for b in BrokerType}
    for run in runs:
        by_broker.setdefault(run.broker_type, []).append(run)
    return [classify_health(aggregate_sync_runs(broker, broker_runs)) for broker, broker_runs in by_broker.items()]


async def check_and_alert(since: datetime) -> list[str]:
    """Log an alert for each unhealthy broker outside its cooldown; returns the alerted brokers."""
    alerted: list[str] = []
    client = await get_valkey_client()
    for health in await get_all_broker_health_status(since):
        if health.status is not HealthStatus.UNHEALTHY:
            continue
        fresh = await client.set(
            f"{ALERT_PREFIX}:{health.broker_type}",
            datetime.now(UTC).isoformat(),
            ex=settings.broker_alert_cooldown,
            nx=True,
        )
        if not fresh:
            continue
        logger.error(
            f"Broker sync unhealthy: {health.broker_type}",
            extra={"alert": True, **health.to_dict()},
        )
        alerted.append(health.broker_type)
    return alerted


async def get_connection_metrics(connection_id: int) -> dict[str, Any]:
    runs = await sync_runs_repo.list_recent_runs(connection_id, CONNECTION_METRICS_WINDOW)
    broker = runs[0].broker_type if runs else "UNKNOWN"
    metrics = aggregate_sync_runs(broker, runs)
    return {"connection_id": connection_id, **metrics.to_dict()}
