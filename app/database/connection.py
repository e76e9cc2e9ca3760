"""PostgreSQL connection management with SQLAlchemy async sessions.

Usage:
    from app.database.connection import get_session
    from app.database.orm import BrokerConnection

    async with get_session() as session:
        connection = await session.get(BrokerConnection, 42)
        connection.status = "DISABLED"
        await session.commit()
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings
from app.core.logging import get_logger


logger = get_logger("database")


def get_async_database_url(url: str) -> str:
    """Convert a postgresql:// URL to the asyncpg driver form.

    Shared with alembic so both resolve the same URL.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_sqlalchemy_engine() -> AsyncEngine:
    global _engine, _session_factory

    if _engine is not None:
        return _engine

    try:
        _engine = create_async_engine(
            get_async_database_url(settings.database_url),
            pool_size=settings.db_pool_min_size,
            max_overflow=settings.db_pool_max_size - settings.db_pool_min_size,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={"server_settings": {"application_name": "tradejournal", "timezone": "UTC"}},
        )
        _session_factory = async_sessionmaker(
            bind=_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("SQLAlchemy async engine initialized")
        return _engine
    except Exception as e:
        logger.error(f"SQLAlchemy engine init failed: {e}")
        raise


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        await init_sqlalchemy_engine()
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Async session that rolls back on error; callers commit explicitly."""
    session_factory = await get_session_factory()
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def close_sqlalchemy_engine() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("SQLAlchemy engine closed")


async def init_database() -> None:
    await init_sqlalchemy_engine()


async def close_database() -> None:
    await close_sqlalchemy_engine()
