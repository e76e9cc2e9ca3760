"""Database module: SQLAlchemy async engine, sessions and ORM models."""

from .connection import (
    close_database,
    close_sqlalchemy_engine,
    get_async_database_url,
    get_session,
    get_session_factory,
    init_database,
    init_sqlalchemy_engine,
)
from .orm import AnalysisRun, Base, BrokerConnection, SyncRun, Trade


__all__ = [
    "AnalysisRun",
    "Base",
    "BrokerConnection",
    "SyncRun",
    "Trade",
    "close_database",
    "close_sqlalchemy_engine",
    "get_async_database_url",
    "get_session",
    "get_session_factory",
    "init_database",
    "init_sqlalchemy_engine",
]
