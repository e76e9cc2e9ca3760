"""Stage 2: economic calendar context."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Any

from app.schemas.daily_bias import MacroAnalysis

from .base import AnalysisStage, StageContext, as_json
from .instruments import macro_currencies


LOOKBACK_HOURS = 72
LOOKAHEAD_HOURS = 48
MAX_EVENTS = 25


class MacroStage(AnalysisStage[MacroAnalysis]):
    name = "macro"
    output_model = MacroAnalysis
    ttl_setting = "macro_cache_ttl"
    schema_hint = (
        '{"economic_events": [{"event": string, "time": ISO-8601|null, '
        '"importance": "LOW|MEDIUM|HIGH|CRITICAL", "country": string, "forecast": string|null, '
        '"previous": string|null, "actual": string|null}], "macro_score": 0-10, '
        '"sentiment": "VERY_BEARISH|BEARISH|NEUTRAL|BULLISH|VERY_BULLISH", '
        '"summary": string, "key_themes": [string]}'
    )

    def extra_params(self, ctx: StageContext) -> dict[str, Any]:
        return {"currencies": list(macro_currencies(ctx.instrument))}

    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        anchor = datetime.combine(ctx.analysis_date, time(13, 30), tzinfo=timezone.utc)
        events = await self.market_data.get_economic_calendar(
            start=anchor - timedelta(hours=LOOKBACK_HOURS),
            end=anchor + timedelta(hours=LOOKAHEAD_HOURS),
            currencies=macro_currencies(ctx.instrument),
            min_impact="MEDIUM",
        )
        return {"events": [e.to_dict() for e in events[:MAX_EVENTS]]}

    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str:
        events = data["events"]
        listing = as_json(events) if events else "No medium or high impact events scheduled."
        return (
            f"Evaluate the macroeconomic backdrop for {ctx.instrument} on "
            f"{ctx.analysis_date.isoformat()}.\n\n"
            f"Economic calendar ({LOOKBACK_HOURS}h back, {LOOKAHEAD_HOURS}h ahead):\n{listing}\n\n"
            "Echo the relevant events, judge the overall macro sentiment for the instrument "
            "and give a macro score where 10 means the strongest conviction."
        )

    async def degraded_output(self, ctx: StageContext, reason: str) -> MacroAnalysis:
        return MacroAnalysis(
            economic_events=[],
            macro_score=5,
            sentiment="NEUTRAL",
            summary="Economic calendar unavailable; macro backdrop treated as neutral.",
            key_themes=[],
        )

    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> MacroAnalysis:
        events = data["events"]
        high_impact = [e for e in events if e["importance"] in ("HIGH", "CRITICAL")]
        return MacroAnalysis(
            economic_events=events,
            macro_score=5,
            sentiment="NEUTRAL",
            summary=(
                f"{len(events)} scheduled events ({len(high_impact)} high impact); "
                "no directional read without model analysis."
            ),
            key_themes=[e["event"] for e in high_impact[:5]],
        )
