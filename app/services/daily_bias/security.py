"""Stage 1: volatility and risk profile of the instrument."""

from __future__ import annotations

from typing import Any

from app.schemas.daily_bias import SecurityAnalysis

from .base import AnalysisStage, StageContext, as_json
from .calculations import risk_level_for, security_score_for, volatility_index
from .instruments import yahoo_ticker


class SecurityStage(AnalysisStage[SecurityAnalysis]):
    name = "security"
    output_model = SecurityAnalysis
    ttl_setting = "security_cache_ttl"
    schema_hint = (
        '{"volatility_index": 0-100, "risk_level": "LOW|MEDIUM|HIGH|CRITICAL", '
        '"security_score": 0-10 (10 = safest), "summary": string, "risks": [string]}'
    )

    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        quote = await self.market_data.get_quote(yahoo_ticker(ctx.instrument))
        return {
            "quote": quote.to_dict(),
            "computed_volatility_index": volatility_index(
                quote.day_high, quote.day_low, quote.change_percent
            ),
        }

    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str:
        return (
            f"Assess the security profile of {ctx.instrument} for the session of "
            f"{ctx.analysis_date.isoformat()}.\n\n"
            f"Latest quote:\n{as_json(data['quote'])}\n\n"
            f"Range-based volatility index (0-100): {data['computed_volatility_index']}\n\n"
            "Rate volatility and risk, list the main risks for an intraday trader "
            "and give a security score where 10 is the calmest market."
        )

    async def degraded_output(self, ctx: StageContext, reason: str) -> SecurityAnalysis:
        return SecurityAnalysis(
            volatility_index=50,
            risk_level="MEDIUM",
            security_score=5,
            summary=f"Quote data for {ctx.instrument} was unavailable; neutral risk assumed.",
            risks=["Market data unavailable"],
        )

    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> SecurityAnalysis:
        vi = float(data["computed_volatility_index"])
        quote = data["quote"]
        return SecurityAnalysis(
            volatility_index=vi,
            risk_level=risk_level_for(vi),
            security_score=security_score_for(vi),
            summary=(
                f"{ctx.instrument} moved {quote['change_percent']:+.2f}% with a "
                f"{quote['day_low']}-{quote['day_high']} range; volatility index {vi:.0f}."
            ),
            risks=[],
        )
