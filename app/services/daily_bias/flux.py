"""Stage 3: volume profile and order flow."""

from __future__ import annotations

from typing import Any

from app.schemas.daily_bias import FluxAnalysis, OrderFlow, VolumeProfile

from .base import AnalysisStage, StageContext, StageDataUnavailable, as_json
from .calculations import volume_stats
from .instruments import yahoo_ticker


class FluxStage(AnalysisStage[FluxAnalysis]):
    name = "flux"
    output_model = FluxAnalysis
    ttl_setting = "flux_cache_ttl"
    schema_hint = (
        '{"volume_profile": {"total_volume": number, "average_volume": number, "volume_ratio": number}, '
        '"order_flow": {"buy_pressure": 0-1, "sell_pressure": 0-1}, '
        '"institutional_pressure": "BULLISH|BEARISH|NEUTRAL", "flux_score": 0-10, "summary": string}'
    )

    interval = "15m"
    period = "5d"

    def extra_params(self, ctx: StageContext) -> dict[str, Any]:
        return {"interval": self.interval, "period": self.period}

    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        bars = await self.market_data.get_bars(yahoo_ticker(ctx.instrument), self.period, self.interval)
        if "Volume" not in bars or float(bars["Volume"].fillna(0).sum()) <= 0:
            raise StageDataUnavailable(f"No volume data for {ctx.instrument}")
        stats = volume_stats(bars)
        recent = bars.tail(12)
        return {
            "stats": stats.__dict__,
            "recent_bars": [
                {
                    "time": str(idx),
                    "open": round(float(row["Open"]), 4),
                    "close": round(float(row["Close"]), 4),
                    "volume": float(row["Volume"]),
                }
                for idx, row in recent.iterrows()
            ],
        }

    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str:
        return (
            f"Analyze volume and order flow for {ctx.instrument} ahead of "
            f"{ctx.analysis_date.isoformat()}.\n\n"
            f"Computed volume statistics ({self.interval} bars over {self.period}):\n"
            f"{as_json(data['stats'])}\n\n"
            f"Most recent bars:\n{as_json(data['recent_bars'])}\n\n"
            "Describe whether institutions are accumulating or distributing and give a "
            "flux score where 10 means the strongest flow conviction."
        )

    async def degraded_output(self, ctx: StageContext, reason: str) -> FluxAnalysis:
        return FluxAnalysis(
            volume_profile=VolumeProfile(total_volume=0, average_volume=0, volume_ratio=1),
            order_flow=OrderFlow(buy_pressure=0.5, sell_pressure=0.5),
            institutional_pressure="NEUTRAL",
            flux_score=5,
            summary=f"Volume data for {ctx.instrument} was unavailable; flow treated as balanced.",
        )

    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> FluxAnalysis:
        stats = data["stats"]
        imbalance = stats["buy_pressure"] - stats["sell_pressure"]
        if imbalance > 0.1:
            pressure = "BULLISH"
        elif imbalance < -0.1:
            pressure = "BEARISH"
        else:
            pressure = "NEUTRAL"
        return FluxAnalysis(
            volume_profile=VolumeProfile(
                total_volume=stats["total_volume"],
                average_volume=stats["average_volume"],
                volume_ratio=stats["volume_ratio"],
            ),
            order_flow=OrderFlow(buy_pressure=stats["buy_pressure"], sell_pressure=stats["sell_pressure"]),
            institutional_pressure=pressure,
            flux_score=round(min(10.0, 5 + abs(imbalance) * 10), 1),
            summary=(
                f"Up-bar volume share {stats['buy_pressure']:.0%}; last bar at "
                f"{stats['volume_ratio']:.2f}x average volume."
            ),
        )
