"""Stage 4: correlation with the Magnificent Seven."""

from __future__ import annotations

import asyncio
from typing import Any

import pandas as pd

from app.core.logging import get_logger
from app.schemas.daily_bias import LeaderCorrelation, Mag7Analysis
from app.services.market_data import MarketDataError

from .base import AnalysisStage, StageContext, StageDataUnavailable, as_json
from .calculations import return_correlation
from .instruments import MAG7_SYMBOLS, yahoo_ticker


logger = get_logger("daily_bias.mag7")

CORRELATION_PERIOD = "1mo"
CORRELATION_INTERVAL = "1d"


class Mag7Stage(AnalysisStage[Mag7Analysis]):
    name = "mag7"
    output_model = Mag7Analysis
    ttl_setting = "mag7_cache_ttl"
    keeps_last_known = True
    schema_hint = (
        '{"correlations": [{"symbol": "AAPL|MSFT|GOOGL|AMZN|META|NVDA|TSLA", '
        '"correlation": -1..1, "change_percent": number}], "leader_score": 0-10, '
        '"overall_sentiment": "BULLISH|BEARISH|NEUTRAL", "summary": string}'
    )

    async def _closes(self, ticker: str) -> pd.Series | None:
        try:
            bars = await self.market_data.get_bars(ticker, CORRELATION_PERIOD, CORRELATION_INTERVAL)
        except MarketDataError as e:
            logger.info(f"Correlation bars unavailable for {ticker}: {e}")
            return None
        return bars["Close"]

    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        quotes = await self.market_data.get_quotes(MAG7_SYMBOLS)
        if not quotes:
            raise StageDataUnavailable("No Magnificent Seven quotes available")

        target = yahoo_ticker(ctx.instrument)
        closes = await asyncio.gather(self._closes(target), *(self._closes(s) for s in quotes))
        target_closes, leader_closes = closes[0], dict(zip(quotes, closes[1:]))

        leaders = []
        for symbol, quote in quotes.items():
            series = leader_closes.get(symbol)
            if symbol == target:
                correlation = 1.0
            elif target_closes is None or series is None:
                correlation = 0.0
            else:
                correlation = return_correlation(target_closes, series)
            leaders.append(
                {
                    "symbol": symbol,
                    "change_percent": round(quote.change_percent, 3),
                    "correlation": correlation,
                }
            )
        return {"leaders": leaders}

    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str:
        return (
            f"Assess how the Magnificent Seven leaders shape the outlook for {ctx.instrument} "
            f"on {ctx.analysis_date.isoformat()}.\n\n"
            f"Leader moves and {CORRELATION_PERIOD} daily-return correlation with {ctx.instrument}:\n"
            f"{as_json(data['leaders'])}\n\n"
            "Echo the correlations, judge the overall leadership sentiment and give a leader "
            "score where 10 means the leaders strongly support the move."
        )

    async def degraded_output(self, ctx: StageContext, reason: str) -> Mag7Analysis:
        last_known = await self.load_last_known(ctx)
        if last_known is not None:
            return last_known.model_copy(
                update={"summary": f"Last known leader analysis (live data unavailable). {last_known.summary}"[:1500]}
            )
        return Mag7Analysis(
            correlations=[],
            leader_score=5,
            overall_sentiment="NEUTRAL",
            summary="Magnificent Seven data unavailable; leadership treated as neutral.",
        )

    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> Mag7Analysis:
        leaders = data["leaders"]
        weighted = [leader["change_percent"] * abs(leader["correlation"]) for leader in leaders]
        average = sum(weighted) / len(weighted) if weighted else 0.0
        if average > 0.3:
            sentiment = "BULLISH"
        elif average < -0.3:
            sentiment = "BEARISH"
        else:
            sentiment = "NEUTRAL"
        advancing = sum(1 for leader in leaders if leader["change_percent"] > 0)
        return Mag7Analysis(
            correlations=[LeaderCorrelation(**leader) for leader in leaders],
            leader_score=round(min(10.0, 5 + abs(average) * 2), 1),
            overall_sentiment=sentiment,
            summary=f"{advancing} of {len(leaders)} leaders advancing; correlation-weighted move {average:+.2f}%.",
        )
