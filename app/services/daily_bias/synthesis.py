"""Stage 6: combine the five upstream stages into the daily bias."""

from __future__ import annotations

from typing import Any, Mapping

from app.cache.cache import params_fingerprint
from app.schemas.daily_bias import (
    OpeningConfirmation,
    StepWeights,
    SynthesisAnalysis,
    SynthesisDetail,
    TradingRecommendations,
)

from .base import AnalysisStage, StageContext, StageDataUnavailable, StageSource, as_json
from .sentiment import UPSTREAM_STAGES, calculate_sentiment, instrument_weights


TECHNICAL_WEIGHT_CAP = 0.1
FALLBACK_CONFIDENCE_CAP = 0.5

_UNRELIABLE = (StageSource.DEGRADED, StageSource.FALLBACK)
_DIRECTION = {"BULLISH": "UP", "BEARISH": "DOWN", "NEUTRAL": "INDETERMINATE"}


def cap_technical_weight(weights: Mapping[str, float], cap: float = TECHNICAL_WEIGHT_CAP) -> dict[str, float]:
    """Limit the technical weight and spread the excess over the other stages."""
    adjusted = {stage: float(weights.get(stage, 0.0)) for stage in UPSTREAM_STAGES}
    excess = adjusted["technical"] - cap
    if excess <= 0:
        return adjusted
    adjusted["technical"] = cap
    others = [stage for stage in UPSTREAM_STAGES if stage != "technical"]
    other_total = sum(adjusted[s] for s in others)
    for stage in others:
        share = adjusted[stage] / other_total if other_total > 0 else 1 / len(others)
        adjusted[stage] += excess * share
    return {stage: round(value, 4) for stage, value in adjusted.items()}


class SynthesisStage(AnalysisStage[SynthesisAnalysis]):
    name = "synthesis"
    output_model = SynthesisAnalysis
    ttl_setting = "synthesis_cache_ttl"
    temperature = 0.3
    max_tokens = 2500
    schema_hint = (
        '{"final_bias": "BULLISH|BEARISH|NEUTRAL", "confidence": 0-1, '
        '"opening_confirmation": {"expected_direction": "UP|DOWN|INDETERMINATE", '
        '"confirmation_score": 0-1, "time_to_confirm": string, "confirmation_criteria": [string]}, '
        '"analysis": {"summary": string (max 800 chars), '
        '"step_weights": {"security": 0-1, "macro": 0-1, "flux": 0-1, "mag7": 0-1, "technical": 0-1} (sum 1.0), '
        '"agreement_level": 0-1, "key_thesis_points": [string] (1-7), "counter_arguments": [string] (1-5), '
        '"trading_recommendations": {"primary": string, "target_upside": number|null, '
        '"target_downside": number|null, "stop_loss": number|null, "risk_reward_ratio": number|null, '
        '"alternative_setups": [string]}}}'
    )

    def _upstream_outputs(self, ctx: StageContext) -> dict[str, dict[str, Any]]:
        missing = [stage for stage in UPSTREAM_STAGES if stage not in ctx.upstream]
        if missing:
            raise StageDataUnavailable(f"Synthesis requires all upstream stages, missing: {', '.join(missing)}")
        return {stage: ctx.upstream[stage].output_dict() for stage in UPSTREAM_STAGES}

    def _technical_unreliable(self, ctx: StageContext) -> bool:
        technical = ctx.upstream.get("technical")
        return technical is None or technical.source in _UNRELIABLE

    def extra_params(self, ctx: StageContext) -> dict[str, Any]:
        # Cached and freshly computed upstream outputs are interchangeable.
        upstream = {
            stage: {"output": result.output_dict(), "reliable": result.source not in _UNRELIABLE}
            for stage, result in ctx.upstream.items()
        }
        return {"upstream": params_fingerprint(upstream)}

    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        outputs = self._upstream_outputs(ctx)
        weights = instrument_weights(ctx.instrument)
        if self._technical_unreliable(ctx):
            weights = cap_technical_weight(weights)
        sentiment = calculate_sentiment(ctx.instrument, outputs, weights)
        return {
            "outputs": outputs,
            "sources": {stage: ctx.upstream[stage].source.value for stage in UPSTREAM_STAGES},
            "sentiment": sentiment.to_dict(),
        }

    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str:
        unreliable = [s for s, src in data["sources"].items() if src in (StageSource.DEGRADED.value, StageSource.FALLBACK.value)]
        caveat = ""
        if unreliable:
            caveat = (
                f"\nThese stages ran without live data or model analysis and deserve less weight: "
                f"{', '.join(unreliable)}."
            )
        if "technical" in unreliable:
            caveat += f" Keep the technical step weight at or below {TECHNICAL_WEIGHT_CAP}."
        return (
            f"Synthesize the daily bias for {ctx.instrument} on {ctx.analysis_date.isoformat()} "
            f"from the five stage analyses below.\n\n"
            f"Stage outputs:\n{as_json(data['outputs'])}\n\n"
            f"Weighted sentiment aggregate:\n{as_json(data['sentiment'])}\n"
            f"{caveat}\n\n"
            "Decide the final bias and confidence, state how the opening should confirm it, "
            "assign step weights that sum to 1.0 and give concrete trading recommendations "
            "using only price levels present in the technical analysis."
        )

    def postprocess(self, ctx: StageContext, data: dict[str, Any], output: SynthesisAnalysis) -> SynthesisAnalysis:
        if not self._technical_unreliable(ctx):
            return output
        weights = output.analysis.step_weights.model_dump()
        if weights["technical"] <= TECHNICAL_WEIGHT_CAP:
            return output
        capped = StepWeights(**cap_technical_weight(weights))
        analysis = output.analysis.model_copy(update={"step_weights": capped})
        return output.model_copy(update={"analysis": analysis})

    async def degraded_output(self, ctx: StageContext, reason: str) -> SynthesisAnalysis:
        outputs = {stage: r.output_dict() for stage, r in ctx.upstream.items()}
        weights = instrument_weights(ctx.instrument)
        if self._technical_unreliable(ctx):
            weights = cap_technical_weight(weights)
        sentiment = calculate_sentiment(ctx.instrument, outputs, weights).to_dict()
        return self._from_sentiment(ctx, outputs, sentiment)

    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> SynthesisAnalysis:
        return self._from_sentiment(ctx, data["outputs"], data["sentiment"])

    def _from_sentiment(
        self, ctx: StageContext, outputs: Mapping[str, Any], sentiment: dict[str, Any]
    ) -> SynthesisAnalysis:
        bias = sentiment["bias"]
        stances = sentiment["stances"]
        weights = {stage: round(float(w), 4) for stage, w in sentiment["weights"].items()}
        # Absorb rounding drift in the largest weight.
        drift = 1.0 - sum(weights.values())
        heaviest = max(weights, key=weights.get)
        weights[heaviest] = round(weights[heaviest] + drift, 4)

        aligned = [s for s, st in stances.items() if st["bias"] == bias]
        opposing = [s for s, st in stances.items() if st["bias"] not in (bias, "NEUTRAL")]
        thesis = [f"{stage.title()} reads {stances[stage]['bias'].lower()}" for stage in aligned] or [
            "No stage shows a directional edge"
        ]
        counter = [f"{stage.title()} reads {stances[stage]['bias'].lower()}" for stage in opposing] or [
            "No stage contradicts the aggregate bias"
        ]

        technical = outputs.get("technical") or {}
        supports = technical.get("support_levels") or []
        resistances = technical.get("resistance_levels") or []
        upside = resistances[0]["price"] if resistances else None
        downside = supports[0]["price"] if supports else None
        stop = downside if bias == "BULLISH" else upside if bias == "BEARISH" else None

        if bias == "NEUTRAL":
            primary = "Stand aside until the open establishes direction"
        else:
            primary = f"Favor {'long' if bias == 'BULLISH' else 'short'} setups that confirm after the open"

        return SynthesisAnalysis(
            final_bias=bias,
            confidence=round(min(FALLBACK_CONFIDENCE_CAP, float(sentiment["confidence"])), 4),
            opening_confirmation=OpeningConfirmation(
                expected_direction=_DIRECTION[bias],
                confirmation_score=round(float(sentiment["agreement"]), 4),
                time_to_confirm="First 30 minutes of the regular session",
                confirmation_criteria=[
                    "Price holds the opening range in the bias direction",
                    "Volume on the opening bars exceeds the recent average",
                ],
            ),
            analysis=SynthesisDetail(
                summary=(
                    f"Simplified summary for {ctx.instrument}: weighted sentiment score "
                    f"{sentiment['score']:+.2f} gives a {bias.lower()} bias."
                ),
                step_weights=StepWeights(**weights),
                agreement_level=round(float(sentiment["agreement"]), 4),
                key_thesis_points=thesis[:7],
                counter_arguments=counter[:5],
                trading_recommendations=TradingRecommendations(
                    primary=primary,
                    target_upside=upside,
                    target_downside=downside,
                    stop_loss=stop,
                ),
            ),
        )
