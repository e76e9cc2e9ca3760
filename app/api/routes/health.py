"""Health check endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter
from sqlalchemy import text

from app.cache.client import valkey_healthcheck
from app.core.config import settings
from app.core.logging import get_logger
from app.database.connection import get_session
from app.schemas.common import HealthResponse


router = APIRouter(prefix="/health")

logger = get_logger("health")


async def db_healthcheck() -> bool:
    """Check PostgreSQL database health."""
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database healthcheck failed: {e}")
        return False


@router.get(
    "",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the API and its dependencies.",
)
async def health_check() -> HealthResponse:
    """
    Perform health check on API and dependencies.

    Returns overall health status and individual service checks.
    """
    checks = {
        "database": await db_healthcheck(),
        "cache": await valkey_healthcheck(),
    }

    if all(checks.values()):
        status = "healthy"
    elif checks["database"]:
        status = "degraded"  # DB ok but cache down
    else:
        status = "unhealthy"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        timestamp=datetime.now(UTC),
        checks=checks,
    )


@router.get("/live", summary="Liveness check")
async def liveness_check() -> dict:
    return {"status": "alive"}
