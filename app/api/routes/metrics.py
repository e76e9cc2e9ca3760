"""Broker sync metrics routes."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import require_user
from app.core.security import TokenData
from app.schemas.broker import BrokerMetricsResponse
from app.services.brokers import parse_broker_type
from app.services.brokers.monitoring import (
    calculate_broker_metrics,
    classify_health,
    get_all_broker_health_status,
)


router = APIRouter(prefix="/broker", tags=["Metrics"])

DEFAULT_WINDOW = timedelta(hours=24)


@router.get(
    "/metrics",
    response_model=BrokerMetricsResponse,
    summary="Broker sync metrics",
    description="Success rate, latency and health per broker since the given time (default: last 24h).",
)
async def broker_metrics(
    broker_type: str | None = Query(default=None, max_length=32),
    since: datetime | None = Query(default=None),
    user: TokenData = Depends(require_user),
) -> BrokerMetricsResponse:
    if since is None:
        since = datetime.now(UTC) - DEFAULT_WINDOW
    elif since.tzinfo is None:
        since = since.replace(tzinfo=UTC)

    if broker_type:
        metrics = await calculate_broker_metrics(parse_broker_type(broker_type).value, since)
        brokers = [classify_health(metrics).to_dict()]
    else:
        brokers = [h.to_dict() for h in await get_all_broker_health_status(since)]
    return BrokerMetricsResponse(since=since, brokers=brokers)
