"""
TradeStation adapter.

OAuth2 authorization-code flow against signin.tradestation.com and the v3
brokerage API (live or sim). TradeStation exposes orders rather than
executions, so filled historical orders are paired FIFO into round trips.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from authlib.common.errors import AuthlibBaseError
import httpx

from app.core.config import settings
from app.core.exceptions import ConfigurationError
from app.core.oauth import TRADESTATION_OAUTH, create_oauth_client, is_configured

from .base import BrokerAdapter, logger
from .errors import BrokerAuthError, BrokerUnavailableError
from .pairing import Fill
from .types import AuthKind, BrokerAccount, BrokerType, OAuthTokens, parse_timestamp, to_decimal


LIVE_API = "https://api.tradestation.com/v3"
SIM_API = "https://sim-api.tradestation.com/v3"

_FILLED_STATUSES = {"FLL", "FILLED"}
PAGE_SIZE = 500
MAX_PAGES = 200


class TradeStationAdapter(BrokerAdapter):
    broker_type = BrokerType.TRADESTATION
    auth_kind = AuthKind.OAUTH
    supports_multiple_accounts = True

    @property
    def base_url(self) -> str:
        return SIM_API if settings.tradestation_use_sim else LIVE_API

    def _oauth_client(self):
        if not is_configured(TRADESTATION_OAUTH):
            raise ConfigurationError(
                "TradeStation OAuth client is not configured",
                error_code="MISSING_TRADESTATION_CLIENT_ID",
            )
        return create_oauth_client(TRADESTATION_OAUTH, transport=self._transport)

    def authorization_url(self, state: str) -> str:
        client = self._oauth_client()
        url, _ = client.create_authorization_url(
            TRADESTATION_OAUTH.authorize_url,
            state=state,
            **TRADESTATION_OAUTH.extra_authorize_params,
        )
        return url

    async def exchange_code(self, code: str) -> OAuthTokens:
        async with self._oauth_client() as client:
            try:
                token = await client.fetch_token(
                    TRADESTATION_OAUTH.token_url,
                    grant_type="authorization_code",
                    code=code,
                )
            except AuthlibBaseError as e:
                raise BrokerAuthError(f"TradeStation code exchange failed: {e}") from e
            except httpx.HTTPError as e:
                raise BrokerUnavailableError(f"TradeStation token endpoint unavailable: {e}") from e
        return OAuthTokens.from_token_response(dict(token))

    async def refresh_token(self, credentials: dict[str, Any]) -> OAuthTokens:
        refresh = credentials.get("refresh_token")
        if not refresh:
            raise BrokerAuthError("No TradeStation refresh token stored")
        async with self._oauth_client() as client:
            try:
                token = await client.refresh_token(TRADESTATION_OAUTH.token_url, refresh_token=refresh)
            except AuthlibBaseError as e:
                raise BrokerAuthError(f"TradeStation token refresh failed: {e}") from e
            except httpx.HTTPError as e:
                raise BrokerUnavailableError(f"TradeStation token endpoint unavailable: {e}") from e
        return OAuthTokens.from_token_response(dict(token), previous_refresh=refresh)

    def _api_client(self, credentials: dict[str, Any]) -> httpx.AsyncClient:
        token = credentials.get("access_token")
        if not token:
            raise BrokerAuthError("No TradeStation access token stored")
        return self.http_client(base_url=self.base_url, headers={"Authorization": f"Bearer {token}"})

    async def authenticate(self, credentials: dict[str, Any]) -> list[BrokerAccount]:
        async with self._api_client(credentials) as client:
            data = await self.request_json(client, "GET", "/brokerage/accounts")
        return [
            BrokerAccount(
                id=str(account["AccountID"]),
                name=f"{account.get('AccountType', 'Account')} ({account['AccountID']})",
                currency=account.get("Currency"),
            )
            for account in data.get("Accounts", [])
        ]

    async def _historical_orders(
        self, client: httpx.AsyncClient, account_id: str, since: Optional[datetime]
    ) -> list[dict[str, Any]]:
        orders: list[dict[str, Any]] = []
        next_token: Optional[str] = None
        for _ in range(MAX_PAGES):
            params: dict[str, Any] = {"pageSize": PAGE_SIZE}
            if since is not None:
                params["since"] = since.date().isoformat()
            if next_token:
                params["nextToken"] = next_token
            data = await self.request_json(
                client, "GET", f"/brokerage/accounts/{account_id}/historicalorders", params=params
            )
            orders.extend(data.get("Orders", []))
            next_token = data.get("NextToken")
            if not next_token:
                break
        else:
            logger.warning(
                "TradeStation order pagination truncated",
                extra={"account_id": account_id, "pages": MAX_PAGES},
            )
        return orders

    @staticmethod
    def order_to_fill(order: dict[str, Any]) -> Optional[Fill]:
        if str(order.get("Status", "")).upper() not in _FILLED_STATUSES:
            return None
        legs = order.get("Legs") or [{}]
        leg = legs[0]
        quantity = to_decimal(order.get("FilledQuantity") or leg.get("ExecQuantity"))
        filled_at = parse_timestamp(order.get("ClosedDateTime") or order.get("FilledTime"))
        if quantity <= 0 or filled_at is None:
            return None
        side = str(order.get("Side") or leg.get("BuyOrSell") or "").lower()
        return Fill(
            fill_id=str(order["OrderID"]),
            symbol=str(order.get("Symbol") or leg.get("Symbol") or ""),
            side="buy" if side.startswith("buy") else "sell",
            quantity=quantity,
            price=to_decimal(order.get("FilledPrice") or order.get("AveragePrice") or leg.get("ExecutionPrice")),
            filled_at=filled_at,
            commission=to_decimal(order.get("CommissionFee") or order.get("Commission")),
        )

    async def fetch_fills(
        self, credentials: dict[str, Any], account_id: str, start: Optional[datetime]
    ) -> list[Fill]:
        async with self._api_client(credentials) as client:
            orders = await self._historical_orders(client, account_id, start)
        return [fill for fill in map(self.order_to_fill, orders) if fill is not None]
