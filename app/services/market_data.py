"""
Market data access for the analysis stages.

Quotes and bars come from Yahoo Finance (blocking client run in a shared
thread pool, paced by an in-process token bucket); the economic calendar
comes from the weekly ForexFactory JSON feed over httpx. Every fetch is
bounded by ``settings.market_data_timeout`` and raises ``MarketDataError``
on failure so callers can degrade explicitly.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx
import pandas as pd
import yfinance as yf

from app.core.config import settings
from app.core.logging import get_logger
from app.core.rate_limiter import get_market_data_bucket


logger = get_logger("services.market_data")

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="yfinance")

IMPACT_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


class MarketDataError(Exception):
    """A market data source returned nothing usable."""


@dataclass
class Quote:
    symbol: str
    price: float
    previous_close: float
    day_high: float
    day_low: float
    volume: float
    as_of: datetime

    @property
    def change_percent(self) -> float:
        if not self.previous_close:
            return 0.0
        return (self.price - self.previous_close) / self.previous_close * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": round(self.price, 4),
            "previous_close": round(self.previous_close, 4),
            "change_percent": round(self.change_percent, 3),
            "day_high": round(self.day_high, 4),
            "day_low": round(self.day_low, 4),
            "volume": self.volume,
            "as_of": self.as_of.isoformat(),
        }


@dataclass
class EconomicEvent:
    title: str
    country: str
    time: Optional[datetime]
    impact: str
    forecast: Optional[str] = None
    previous: Optional[str] = None
    actual: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.title,
            "country": self.country,
            "time": self.time.isoformat() if self.time else None,
            "importance": self.impact,
            "forecast": self.forecast,
            "previous": self.previous,
            "actual": self.actual,
        }


def _flatten_columns(df: pd.DataFrame, ticker: str) -> pd.DataFrame:
    """yfinance returns (field, ticker) MultiIndex columns for single tickers too."""
    if isinstance(df.columns, pd.MultiIndex):
        if ticker in df.columns.get_level_values(1):
            return df.xs(ticker, axis=1, level=1)
        df = df.copy()
        df.columns = df.columns.droplevel(1)
    return df


def _parse_event_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _normalize_impact(value: Any) -> str:
    impact = str(value or "").strip().upper()
    return impact if impact in IMPACT_RANK else "LOW"


class MarketDataService:
    """Async facade over quote, bar and calendar sources."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._http_client = http_client
        self._bucket = get_market_data_bucket()

    def _download_sync(self, ticker: str, period: str, interval: str) -> pd.DataFrame:
        df = yf.download(
            ticker,
            period=period,
            interval=interval,
            auto_adjust=True,
            progress=False,
            timeout=settings.market_data_timeout,
        )
        if df is None or df.empty:
            return pd.DataFrame()
        return _flatten_columns(df, ticker).dropna(subset=["Close"])

    async def get_bars(self, ticker: str, period: str = "5d", interval: str = "1h") -> pd.DataFrame:
        """OHLCV bars with columns Open, High, Low, Close, Volume."""
        if not await self._bucket.acquire(timeout=settings.market_data_timeout):
            raise MarketDataError(f"Rate limited fetching bars for {ticker}")

        loop = asyncio.get_running_loop()
        try:
            df = await asyncio.wait_for(
                loop.run_in_executor(_executor, self._download_sync, ticker, period, interval),
                timeout=settings.market_data_timeout,
            )
        except asyncio.TimeoutError as e:
            raise MarketDataError(f"Timed out fetching bars for {ticker}") from e
        except MarketDataError:
            raise
        except Exception as e:
            raise MarketDataError(f"Failed to fetch bars for {ticker}: {e}") from e

        if df.empty:
            raise MarketDataError(f"No bars returned for {ticker}")
        return df

    async def get_quote(self, ticker: str) -> Quote:
        """Latest daily quote derived from the last two daily bars."""
        df = await self.get_bars(ticker, period="5d", interval="1d")
        last = df.iloc[-1]
        previous_close = float(df["Close"].iloc[-2]) if len(df) > 1 else float(last["Open"])
        as_of = df.index[-1]
        as_of = as_of.to_pydatetime() if hasattr(as_of, "to_pydatetime") else datetime.now(timezone.utc)
        return Quote(
            symbol=ticker,
            price=float(last["Close"]),
            previous_close=previous_close,
            day_high=float(last["High"]),
            day_low=float(last["Low"]),
            volume=float(last.get("Volume", 0.0) or 0.0),
            as_of=as_of,
        )

    async def get_quotes(self, tickers: Sequence[str]) -> dict[str, Quote]:
        """Quotes for several tickers; tickers that fail are left out."""
        results = await asyncio.gather(*(self.get_quote(t) for t in tickers), return_exceptions=True)
        quotes: dict[str, Quote] = {}
        for ticker, result in zip(tickers, results):
            if isinstance(result, Quote):
                quotes[ticker] = result
            else:
                logger.info(f"Quote unavailable for {ticker}: {result}")
        return quotes

    async def get_economic_calendar(
        self,
        start: datetime,
        end: datetime,
        currencies: Sequence[str] = ("USD",),
        min_impact: str = "MEDIUM",
    ) -> list[EconomicEvent]:
        """Calendar events in [start, end] for the given currencies at or above ``min_impact``."""
        client = self._http_client or httpx.AsyncClient(timeout=settings.market_data_timeout)
        try:
            response = await client.get(settings.economic_calendar_url)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MarketDataError(f"Economic calendar unavailable: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if not isinstance(payload, list):
            raise MarketDataError("Economic calendar returned an unexpected payload")

        threshold = IMPACT_RANK[min_impact]
        wanted = {c.upper() for c in currencies}
        events = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            impact = _normalize_impact(item.get("impact"))
            when = _parse_event_time(item.get("date"))
            if IMPACT_RANK[impact] < threshold or str(item.get("country", "")).upper() not in wanted:
                continue
            if when is not None and not (start <= when <= end):
                continue
            events.append(
                EconomicEvent(
                    title=str(item.get("title", "")).strip() or "Unnamed event",
                    country=str(item.get("country", "")).upper(),
                    time=when,
                    impact=impact,
                    forecast=item.get("forecast") or None,
                    previous=item.get("previous") or None,
                    actual=item.get("actual") or None,
                )
            )
        events.sort(key=lambda e: e.time or end)
        return events


_instance: Optional[MarketDataService] = None


def get_market_data_service() -> MarketDataService:
    global _instance
    if _instance is None:
        _instance = MarketDataService()
    return _instance
