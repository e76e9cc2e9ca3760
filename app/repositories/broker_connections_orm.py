"""Broker connection repository using SQLAlchemy ORM."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, or_, select, update

from app.core.logging import get_logger
from app.database.connection import get_session
from app.database.orm import BrokerConnection as BrokerConnectionORM


logger = get_logger("repositories.broker_connections_orm")


@dataclass
class BrokerConnectionRecord:
    id: int
    user_id: str
    broker_type: str
    account_id: str
    encrypted_credentials: str
    status: str = "ACTIVE"
    token_expires_at: datetime | None = None
    sync_interval_minutes: int = 60
    sync_watermark: datetime | None = None
    pairing_cursor: dict[str, Any] | None = None
    last_sync_at: datetime | None = None
    last_sync_status: str | None = None
    consecutive_auth_failures: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm(cls, row: BrokerConnectionORM) -> BrokerConnectionRecord:
        return cls(
            id=row.id,
            user_id=row.user_id,
            broker_type=row.broker_type,
            account_id=row.account_id,
            encrypted_credentials=row.encrypted_credentials,
            status=row.status,
            token_expires_at=row.token_expires_at,
            sync_interval_minutes=row.sync_interval_minutes,
            sync_watermark=row.sync_watermark,
            pairing_cursor=row.pairing_cursor,
            last_sync_at=row.last_sync_at,
            last_sync_status=row.last_sync_status,
            consecutive_auth_failures=row.consecutive_auth_failures or 0,
            last_error=row.last_error,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


async def get_connection(connection_id: int) -> BrokerConnectionRecord | None:
    async with get_session() as session:
        row = await session.get(BrokerConnectionORM, connection_id)
        return BrokerConnectionRecord.from_orm(row) if row else None


async def list_user_connections(user_id: str) -> list[BrokerConnectionRecord]:
    async with get_session() as session:
        result = await session.execute(
            select(BrokerConnectionORM)
            .where(BrokerConnectionORM.user_id == user_id)
            .order_by(BrokerConnectionORM.created_at)
        )
        return [BrokerConnectionRecord.from_orm(row) for row in result.scalars().all()]


def _claimable(stale_before: datetime | None):
    """ACTIVE rows, plus SYNCING rows untouched since ``stale_before`` (an abandoned sync)."""
    if stale_before is None:
        return BrokerConnectionORM.status == "ACTIVE"
    return or_(
        BrokerConnectionORM.status == "ACTIVE",
        and_(
            BrokerConnectionORM.status == "SYNCING",
            BrokerConnectionORM.updated_at < stale_before,
        ),
    )


async def list_active_connections(stale_before: datetime | None = None) -> list[BrokerConnectionRecord]:
    async with get_session() as session:
        result = await session.execute(
            select(BrokerConnectionORM)
            .where(_claimable(stale_before))
            .order_by(BrokerConnectionORM.last_sync_at.asc().nulls_first())
        )
        return [BrokerConnectionRecord.from_orm(row) for row in result.scalars().all()]


async def save_connection(
    *,
    user_id: str,
    broker_type: str,
    account_id: str,
    encrypted_credentials: str,
    token_expires_at: datetime | None,
    sync_interval_minutes: int,
) -> BrokerConnectionRecord:
    """Create a connection or refresh the credentials of the live one for the same account."""
    now = datetime.now(UTC)
    async with get_session() as session:
        result = await session.execute(
            select(BrokerConnectionORM).where(
                BrokerConnectionORM.user_id == user_id,
                BrokerConnectionORM.broker_type == broker_type,
                BrokerConnectionORM.account_id == account_id,
                BrokerConnectionORM.status != "DISABLED",
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = BrokerConnectionORM(
                user_id=user_id,
                broker_type=broker_type,
                account_id=account_id,
                encrypted_credentials=encrypted_credentials,
                token_expires_at=token_expires_at,
                status="ACTIVE",
                sync_interval_minutes=sync_interval_minutes,
                consecutive_auth_failures=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
        else:
            row.encrypted_credentials = encrypted_credentials
            row.token_expires_at = token_expires_at
            row.consecutive_auth_failures = 0
            row.last_error = None
            row.updated_at = now
        await session.commit()
        await session.refresh(row)
        record = BrokerConnectionRecord.from_orm(row)

    logger.info(
        "Broker connection saved",
        extra={"connection_id": record.id, "broker": broker_type, "user_id": user_id},
    )
    return record


async def mark_syncing(connection_id: int, stale_before: datetime | None = None) -> bool:
    """
    ACTIVE -> SYNCING; False when the connection is disabled or another sync
    holds it. A SYNCING row last updated before ``stale_before`` is claimed too.
    """
    async with get_session() as session:
        result = await session.execute(
            update(BrokerConnectionORM)
            .where(
                BrokerConnectionORM.id == connection_id,
                _claimable(stale_before),
            )
            .values(status="SYNCING", updated_at=datetime.now(UTC))
        )
        await session.commit()
        return result.rowcount == 1


async def update_connection(connection_id: int, **values: Any) -> None:
    values["updated_at"] = datetime.now(UTC)
    async with get_session() as session:
        await session.execute(
            update(BrokerConnectionORM)
            .where(BrokerConnectionORM.id == connection_id)
            .values(**values)
        )
        await session.commit()


async def disable_connection(user_id: str, connection_id: int) -> bool:
    async with get_session() as session:
        result = await session.execute(
            update(BrokerConnectionORM)
            .where(
                BrokerConnectionORM.id == connection_id,
                BrokerConnectionORM.user_id == user_id,
            )
            .values(status="DISABLED", updated_at=datetime.now(UTC))
        )
        await session.commit()
        return result.rowcount == 1
