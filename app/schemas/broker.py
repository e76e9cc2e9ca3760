"""Broker connection, sync and monitoring API models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ApiKeyConnectRequest(BaseModel):
    broker_type: str = Field(..., examples=["ALPACA"])
    api_key: str = Field(..., min_length=1)
    api_secret: str = Field(..., min_length=1)
    sync_interval_minutes: Optional[int] = Field(default=None, ge=5, le=24 * 60)


class ConnectionCreatedResponse(BaseModel):
    connection_ids: list[int]


class BrokerConnectionResponse(BaseModel):
    id: int
    broker_type: str
    account_id: str
    status: str
    sync_interval_minutes: int
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SyncRunResponse(BaseModel):
    id: int
    connection_id: int
    broker_type: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    trades_imported: int = 0
    trades_skipped: int = 0
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    duration_ms: Optional[int] = None

    model_config = {"from_attributes": True}


class ManualSyncResponse(BaseModel):
    task_id: str
    connection_id: int


class SchedulerRunResponse(BaseModel):
    connections_processed: int
    succeeded: int
    partial: int
    failed: int
    skipped: int
    skipped_locked: bool
    started_at: Optional[str] = None
    duration_ms: Optional[int] = None


class BrokerMetricsResponse(BaseModel):
    since: datetime
    brokers: list[dict[str, Any]]
