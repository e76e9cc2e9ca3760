"""Trade repository. Upsert on (account_id, broker_trade_id) is the only write path."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Sequence

from sqlalchemy import func, literal_column
from sqlalchemy.dialects.postgresql import Insert, insert

from app.core.logging import get_logger
from app.database.connection import get_session
from app.database.orm import Trade as TradeORM


logger = get_logger("repositories.trades_orm")

# Columns a re-import may correct; identity columns never change.
_MUTABLE_COLUMNS = (
    "symbol",
    "direction",
    "opened_at",
    "closed_at",
    "entry_price",
    "exit_price",
    "quantity",
    "realized_pnl",
    "fees",
    "raw",
)


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0


def build_trade_upsert(rows: Sequence[dict[str, Any]]) -> Insert:
    """INSERT ... ON CONFLICT (account_id, broker_trade_id) DO UPDATE.

    RETURNING ``xmax = 0`` is true only for freshly inserted rows, which
    lets the caller count inserts versus re-imports.
    """
    stmt = insert(TradeORM).values(list(rows))
    return stmt.on_conflict_do_update(
        constraint="uq_trades_account_broker_trade",
        set_={
            **{column: getattr(stmt.excluded, column) for column in _MUTABLE_COLUMNS},
            "updated_at": func.now(),
        },
    ).returning(literal_column("(xmax = 0)").label("inserted"))


async def upsert_trades(rows: Sequence[dict[str, Any]]) -> UpsertResult:
    """Upsert one batch in its own transaction."""
    if not rows:
        return UpsertResult()

    async with get_session() as session:
        result = await session.execute(build_trade_upsert(rows))
        flags = [bool(inserted) for (inserted,) in result.all()]
        await session.commit()

    outcome = UpsertResult(inserted=sum(flags), updated=len(flags) - sum(flags))
    logger.debug(
        "Trade batch upserted",
        extra={"inserted": outcome.inserted, "updated": outcome.updated},
    )
    return outcome


def trade_row(
    *,
    user_id: str,
    connection_id: int,
    broker_type: str,
    account_id: str,
    trade: Any,
) -> dict[str, Any]:
    """Row values for a normalized broker trade."""
    return {
        "user_id": user_id,
        "connection_id": connection_id,
        "broker_type": broker_type,
        "account_id": account_id,
        "broker_trade_id": trade.broker_trade_id,
        "symbol": trade.symbol,
        "direction": trade.direction,
        "opened_at": trade.opened_at,
        "closed_at": trade.closed_at,
        "entry_price": trade.entry_price,
        "exit_price": trade.exit_price,
        "quantity": trade.quantity,
        "realized_pnl": trade.realized_pnl,
        "fees": trade.fees,
        "raw": trade.raw,
        "imported_at": datetime.now(UTC),
    }
