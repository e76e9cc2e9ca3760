"""Broker domain types shared by adapters and the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class BrokerType(str, Enum):
    TRADESTATION = "TRADESTATION"
    ALPACA = "ALPACA"


class AuthKind(str, Enum):
    OAUTH = "oauth"
    API_KEY = "api_key"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SYNCING = "SYNCING"
    DISABLED = "DISABLED"


class SyncTrigger(str, Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"


class SyncStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass
class BrokerAccount:
    id: str
    name: str
    currency: Optional[str] = None
    balance: Optional[Decimal] = None


@dataclass
class BrokerTrade:
    """A closed round-trip trade as reported by a broker."""

    broker_trade_id: str
    symbol: str
    direction: str  # LONG | SHORT
    opened_at: Optional[datetime]
    closed_at: datetime
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    realized_pnl: Decimal
    fees: Decimal = Decimal("0")
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]

    @classmethod
    def from_token_response(cls, token: dict[str, Any], previous_refresh: str | None = None) -> OAuthTokens:
        expires_at = None
        if token.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(token["expires_at"]), tz=UTC)
        elif token.get("expires_in"):
            expires_at = datetime.now(UTC) + timedelta(seconds=int(token["expires_in"]))
        return cls(
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token") or previous_refresh,
            expires_at=expires_at,
        )

    def to_credentials(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
