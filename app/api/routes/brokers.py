"""Broker connection routes."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Path, Query, status
from fastapi.responses import RedirectResponse

from app.api.dependencies import require_user
from app.core.logging import get_logger
from app.core.security import TokenData
from app.jobs.dispatch import enqueue_connection_sync
from app.schemas.broker import (
    ApiKeyConnectRequest,
    BrokerConnectionResponse,
    ConnectionCreatedResponse,
    ManualSyncResponse,
    SyncRunResponse,
)
from app.schemas.common import MessageResponse
from app.services.brokers import SyncTrigger, get_sync_engine
from app.services.brokers import connections as connection_service
from app.services.brokers.monitoring import get_connection_metrics


logger = get_logger("routes.brokers")

router = APIRouter(prefix="/brokers", tags=["Brokers"])


@router.get(
    "/{broker_type}/authorize",
    summary="Start OAuth authorization",
    response_class=RedirectResponse,
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
)
async def authorize(
    broker_type: str = Path(..., max_length=32),
    user: TokenData = Depends(require_user),
) -> RedirectResponse:
    url = await connection_service.start_authorization(user.sub, broker_type)
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get(
    "/{broker_type}/callback",
    response_model=ConnectionCreatedResponse,
    summary="OAuth callback",
    description="Exchanges the authorization code and stores one connection per account.",
)
async def callback(
    broker_type: str = Path(..., max_length=32),
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
) -> ConnectionCreatedResponse:
    # The user is identified by the single-use state, not by a session.
    ids = await connection_service.complete_authorization(code, state)
    return ConnectionCreatedResponse(connection_ids=ids)


@router.post(
    "/connections",
    response_model=ConnectionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Connect an API-key broker",
)
async def connect_api_key(
    payload: ApiKeyConnectRequest,
    user: TokenData = Depends(require_user),
) -> ConnectionCreatedResponse:
    ids = await connection_service.connect_with_api_key(
        user.sub,
        payload.broker_type,
        payload.api_key,
        payload.api_secret,
        sync_interval_minutes=payload.sync_interval_minutes,
    )
    return ConnectionCreatedResponse(connection_ids=ids)


@router.get("/connections", response_model=list[BrokerConnectionResponse])
async def list_connections(user: TokenData = Depends(require_user)) -> list[BrokerConnectionResponse]:
    connections = await connection_service.list_connections(user.sub)
    return [BrokerConnectionResponse.model_validate(c) for c in connections]


@router.delete("/connections/{connection_id}", response_model=MessageResponse)
async def delete_connection(
    connection_id: int = Path(..., ge=1),
    user: TokenData = Depends(require_user),
) -> MessageResponse:
    await connection_service.disconnect(user.sub, connection_id)
    return MessageResponse(message="Connection disabled")


@router.post(
    "/connections/{connection_id}/sync",
    response_model=SyncRunResponse | ManualSyncResponse,
    summary="Sync a connection now",
    description=(
        "Runs a manual sync. With full=true the watermark is ignored and the whole "
        "history is re-imported; with background=true the sync is queued instead."
    ),
)
async def sync_connection(
    connection_id: int = Path(..., ge=1),
    full: bool = Query(default=True),
    background: bool = Query(default=False),
    user: TokenData = Depends(require_user),
) -> SyncRunResponse | ManualSyncResponse:
    await connection_service.get_user_connection(user.sub, connection_id)
    if background:
        task_id = enqueue_connection_sync(connection_id, full=full)
        return ManualSyncResponse(task_id=task_id, connection_id=connection_id)

    run = await get_sync_engine().sync_connection(connection_id, SyncTrigger.MANUAL, full=full)
    return SyncRunResponse(**asdict(run))


@router.get("/connections/{connection_id}/metrics", summary="Recent sync metrics for one connection")
async def connection_metrics(
    connection_id: int = Path(..., ge=1),
    user: TokenData = Depends(require_user),
) -> dict:
    await connection_service.get_user_connection(user.sub, connection_id)
    return await get_connection_metrics(connection_id)
