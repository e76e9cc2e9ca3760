"""Alpaca adapter: API key/secret headers, FILL activities paired FIFO."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from app.core.config import settings

from .base import BrokerAdapter
from .errors import BrokerAuthError
from .pairing import Fill
from .types import AuthKind, BrokerAccount, BrokerType, parse_timestamp, to_decimal


LIVE_API = "https://api.alpaca.markets"
PAPER_API = "https://paper-api.alpaca.markets"

PAGE_SIZE = 100
MAX_PAGES = 500
AFTER_MARGIN = timedelta(seconds=1)


class AlpacaAdapter(BrokerAdapter):
    broker_type = BrokerType.ALPACA
    auth_kind = AuthKind.API_KEY

    def base_url(self, credentials: dict[str, Any]) -> str:
        paper = credentials.get("paper", settings.alpaca_paper)
        return PAPER_API if paper else LIVE_API

    def _client(self, credentials: dict[str, Any]) -> httpx.AsyncClient:
        key, secret = credentials.get("api_key"), credentials.get("api_secret")
        if not key or not secret:
            raise BrokerAuthError("Alpaca API key and secret are required")
        return self.http_client(
            base_url=self.base_url(credentials),
            headers={"APCA-API-KEY-ID": key, "APCA-API-SECRET-KEY": secret},
        )

    async def authenticate(self, credentials: dict[str, Any]) -> list[BrokerAccount]:
        async with self._client(credentials) as client:
            account = await self.request_json(client, "GET", "/v2/account")
        mode = "paper" if self.base_url(credentials) == PAPER_API else "live"
        return [
            BrokerAccount(
                id=str(account["account_number"]),
                name=f"Alpaca {account['account_number']} ({mode})",
                currency=account.get("currency"),
                balance=to_decimal(account.get("equity")),
            )
        ]

    @staticmethod
    def activity_to_fill(activity: dict[str, Any]) -> Optional[Fill]:
        filled_at = parse_timestamp(activity.get("transaction_time"))
        quantity = to_decimal(activity.get("qty"))
        if filled_at is None or quantity <= 0:
            return None
        side = str(activity.get("side", "")).lower()
        return Fill(
            fill_id=str(activity["id"]),
            symbol=str(activity.get("symbol", "")),
            side="buy" if side == "buy" else "sell",
            quantity=quantity,
            price=to_decimal(activity.get("price")),
            filled_at=filled_at,
        )

    async def _fill_activities(
        self, client: httpx.AsyncClient, after: Optional[datetime]
    ) -> list[dict[str, Any]]:
        activities: list[dict[str, Any]] = []
        page_token: Optional[str] = None
        for _ in range(MAX_PAGES):
            params: dict[str, Any] = {"direction": "asc", "page_size": PAGE_SIZE}
            if after is not None:
                params["after"] = after.isoformat()
            if page_token:
                params["page_token"] = page_token
            page = await self.request_json(client, "GET", "/v2/account/activities/FILL", params=params)
            if not isinstance(page, list) or not page:
                break
            activities.extend(page)
            if len(page) < PAGE_SIZE:
                break
            page_token = str(page[-1]["id"])
        return activities

    async def fetch_fills(
        self, credentials: dict[str, Any], account_id: str, start: Optional[datetime]
    ) -> list[Fill]:
        # ``after`` is exclusive
        after = start - AFTER_MARGIN if start else None
        async with self._client(credentials) as client:
            activities = await self._fill_activities(client, after)
        return [fill for fill in map(self.activity_to_fill, activities) if fill is not None]
