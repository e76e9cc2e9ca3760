"""Broker adapter interface and shared HTTP handling."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Optional

import httpx

from app.core.config import settings
from app.core.logging import get_logger

from .errors import (
    BrokerApiError,
    BrokerAuthError,
    BrokerNotSupportedError,
    BrokerRateLimitError,
    BrokerUnavailableError,
)
from .pairing import Fill, PairingCursor, pair_fills_fifo, resume_cursor
from .types import AuthKind, BrokerAccount, BrokerTrade, BrokerType, OAuthTokens, parse_timestamp


logger = get_logger("brokers")

@dataclass
class FetchedTrades:
    trades: list[BrokerTrade]
    cursor: Optional[PairingCursor]


class BrokerAdapter(ABC):
    broker_type: ClassVar[BrokerType]
    auth_kind: ClassVar[AuthKind]
    supports_multiple_accounts: ClassVar[bool] = False

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.broker_request_timeout,
            transport=self._transport,
            **kwargs,
        )

    # --------------------------------------------------------------- auth

    def authorization_url(self, state: str) -> str:
        raise BrokerNotSupportedError(f"{self.broker_type.value} does not use OAuth authorization")

    async def exchange_code(self, code: str) -> OAuthTokens:
        raise BrokerNotSupportedError(f"{self.broker_type.value} does not use OAuth authorization")

    async def refresh_token(self, credentials: dict[str, Any]) -> OAuthTokens:
        raise BrokerNotSupportedError(f"{self.broker_type.value} tokens cannot be refreshed")

    @abstractmethod
    async def authenticate(self, credentials: dict[str, Any]) -> list[BrokerAccount]:
        """Validate credentials against the broker; returns the accessible accounts."""

    def needs_refresh(self, credentials: dict[str, Any], margin_seconds: int) -> bool:
        if self.auth_kind is not AuthKind.OAUTH:
            return False
        expires_at = parse_timestamp(credentials.get("expires_at"))
        if expires_at is None:
            return False
        return expires_at - datetime.now(UTC) <= timedelta(seconds=margin_seconds)

    # --------------------------------------------------------------- data

    async def fetch_accounts(self, credentials: dict[str, Any]) -> list[BrokerAccount]:
        return await self.authenticate(credentials)

    @abstractmethod
    async def fetch_fills(
        self, credentials: dict[str, Any], account_id: str, start: Optional[datetime]
    ) -> list[Fill]:
        """Executions at or after ``start`` (all history when None); may include earlier ones."""

    async def fetch_trades(
        self,
        credentials: dict[str, Any],
        account_id: str,
        since: Optional[datetime],
        cursor: Optional[PairingCursor] = None,
    ) -> FetchedTrades:
        """
        Closed trades whose close time is at or after ``since``.

        Fills are read from ``cursor`` onwards, or from the start of the
        account history without one, so positions opened long before
        ``since`` still pair with their closes. The returned cursor is where
        the next call should resume.
        """
        fills = await self.fetch_fills(credentials, account_id, cursor.fills_from if cursor else None)
        if cursor is not None:
            fills = [fill for fill in fills if cursor.admits(fill)]
        trades = filter_since(pair_fills_fifo(fills), since)
        return FetchedTrades(trades=trades, cursor=resume_cursor(fills) or cursor)

    # --------------------------------------------------------------- http

    async def request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Any:
        """Issue a request and map HTTP failures onto broker errors."""
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise BrokerUnavailableError(f"{self.broker_type.value} request timed out") from e
        except httpx.TransportError as e:
            raise BrokerUnavailableError(f"{self.broker_type.value} connection failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise BrokerRateLimitError(
                f"{self.broker_type.value} rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code in (401, 403):
            raise BrokerAuthError(f"{self.broker_type.value} rejected the credentials")
        if response.status_code >= 400:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text[:500]
            error_class = BrokerUnavailableError if response.status_code >= 500 else BrokerApiError
            raise error_class(
                f"{self.broker_type.value} API error {response.status_code}",
                status_code=response.status_code,
                details=detail,
            )
        try:
            return response.json()
        except ValueError as e:
            raise BrokerApiError(f"{self.broker_type.value} returned invalid JSON") from e


def filter_since(trades: list[BrokerTrade], since: Optional[datetime]) -> list[BrokerTrade]:
    if since is None:
        return trades
    return [t for t in trades if t.closed_at >= since]
