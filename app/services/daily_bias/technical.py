"""Stage 5: support, resistance and trend."""

from __future__ import annotations

from typing import Any

import pandas as pd

from app.core.logging import get_logger
from app.schemas.daily_bias import PriceLevel, TechnicalAnalysis, TrendInfo
from app.services.market_data import MarketDataError

from .base import AnalysisStage, StageContext, StageDataUnavailable, as_json
from .calculations import support_resistance, trend_from_closes
from .instruments import yahoo_ticker


logger = get_logger("daily_bias.technical")

TIMEFRAME = "1h"
LOOKBACK_PERIODS = ("5d", "1mo", "3mo")
REQUIRED_BARS = 20
MIN_BARS = 10


class TechnicalStage(AnalysisStage[TechnicalAnalysis]):
    name = "technical"
    output_model = TechnicalAnalysis
    ttl_setting = "technical_cache_ttl"
    keeps_last_known = True
    schema_hint = (
        '{"support_levels": [{"price": number, "strength": 0-1}], '
        '"resistance_levels": [{"price": number, "strength": 0-1}], '
        '"trend": {"direction": "UPTREND|DOWNTREND|SIDEWAYS", "strength": 0-1, "timeframe": string}, '
        '"technical_score": 0-10, "summary": string}'
    )

    def extra_params(self, ctx: StageContext) -> dict[str, Any]:
        return {"timeframe": TIMEFRAME}

    async def _load_bars(self, ticker: str) -> pd.DataFrame:
        """Widen the lookback until enough bars are available."""
        best = pd.DataFrame()
        last_error: Exception | None = None
        for period in LOOKBACK_PERIODS:
            try:
                bars = await self.market_data.get_bars(ticker, period, TIMEFRAME)
            except MarketDataError as e:
                last_error = e
                continue
            if len(bars) > len(best):
                best = bars
            if len(best) >= REQUIRED_BARS:
                break
            logger.info(f"Only {len(bars)} {TIMEFRAME} bars for {ticker} over {period}, widening lookback")

        if len(best) < MIN_BARS:
            detail = f": {last_error}" if last_error else ""
            raise StageDataUnavailable(f"Insufficient price history for {ticker} ({len(best)} bars){detail}")
        return best

    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        bars = await self._load_bars(yahoo_ticker(ctx.instrument))
        supports, resistances = support_resistance(bars)
        direction, strength = trend_from_closes(bars["Close"].to_numpy(dtype=float))
        return {
            "bar_count": len(bars),
            "last_close": round(float(bars["Close"].iloc[-1]), 4),
            "period_high": round(float(bars["High"].max()), 4),
            "period_low": round(float(bars["Low"].min()), 4),
            "supports": supports,
            "resistances": resistances,
            "trend": {"direction": direction, "strength": strength, "timeframe": TIMEFRAME},
        }

    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str:
        return (
            f"Perform a technical analysis of {ctx.instrument} for {ctx.analysis_date.isoformat()}.\n\n"
            f"Computed from {data['bar_count']} {TIMEFRAME} bars:\n{as_json(data)}\n\n"
            "Confirm or refine the support and resistance levels, describe the trend and give "
            "a technical score where 10 means the clearest setup. Only use price levels that "
            "appear in or lie between the supplied figures."
        )

    async def degraded_output(self, ctx: StageContext, reason: str) -> TechnicalAnalysis:
        last_known = await self.load_last_known(ctx)
        if last_known is not None:
            return last_known.model_copy(
                update={"summary": f"Last known technical picture (live data unavailable). {last_known.summary}"[:1500]}
            )
        return TechnicalAnalysis(
            support_levels=[],
            resistance_levels=[],
            trend=TrendInfo(direction="SIDEWAYS", strength=0, timeframe=TIMEFRAME),
            technical_score=5,
            summary=f"Price history for {ctx.instrument} was insufficient; no technical read.",
        )

    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> TechnicalAnalysis:
        trend = data["trend"]
        return TechnicalAnalysis(
            support_levels=[PriceLevel(**level) for level in data["supports"]],
            resistance_levels=[PriceLevel(**level) for level in data["resistances"]],
            trend=TrendInfo(**trend),
            technical_score=round(5 + 5 * trend["strength"] if trend["direction"] != "SIDEWAYS" else 5, 1),
            summary=(
                f"{trend['direction'].title()} on the {TIMEFRAME} chart, last close {data['last_close']} "
                f"within {data['period_low']}-{data['period_high']}."
            ),
        )
