"""Data access layer repositories.

Each repository module provides async functions for database operations.
All code uses SQLAlchemy ORM models from `app.database.orm` with the
`get_session()` context manager.

ORM-based repositories:
- analysis_runs_orm: daily bias runs and their per-stage outputs
- broker_connections_orm: linked broker accounts
- sync_runs_orm: broker sync run history
- trades_orm: imported trades with idempotent upserts
"""

from . import analysis_runs_orm
from . import broker_connections_orm
from . import sync_runs_orm
from . import trades_orm

__all__ = [
    "analysis_runs_orm",
    "broker_connections_orm",
    "sync_runs_orm",
    "trades_orm",
]
