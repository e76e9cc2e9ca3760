"""
Weighted sentiment aggregation across the five upstream stages.

Each stage output is reduced to a stance (bias plus confidence in 0..1);
stances are combined with instrument-class weights into a score in
[-1, 1]. The synthesis prompt receives the aggregate as context and the
synthesis fallback is built directly from it.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping

from .instruments import InstrumentClass, classify_instrument


UPSTREAM_STAGES = ("security", "macro", "flux", "mag7", "technical")

BULLISH_THRESHOLD = 0.2
BEARISH_THRESHOLD = -0.2

_CLASS_WEIGHTS: dict[InstrumentClass, dict[str, float]] = {
    InstrumentClass.INDEX: {"security": 0.15, "macro": 0.15, "flux": 0.20, "mag7": 0.30, "technical": 0.20},
    InstrumentClass.FOREX_METAL: {"security": 0.15, "macro": 0.35, "flux": 0.20, "mag7": 0.10, "technical": 0.20},
    InstrumentClass.STOCK: {"security": 0.25, "macro": 0.10, "flux": 0.25, "mag7": 0.15, "technical": 0.25},
    InstrumentClass.OTHER: {"security": 0.20, "macro": 0.15, "flux": 0.25, "mag7": 0.20, "technical": 0.20},
}

_BIAS_SCORE = {"BULLISH": 1.0, "BEARISH": -1.0, "NEUTRAL": 0.0}


@dataclass(frozen=True)
class Stance:
    bias: str
    confidence: float


@dataclass
class SentimentSummary:
    bias: str
    score: float
    confidence: float
    agreement: float
    weights: dict[str, float]
    stances: dict[str, Stance]

    def to_dict(self) -> dict[str, Any]:
        return {
            "bias": self.bias,
            "score": round(self.score, 4),
            "confidence": round(self.confidence, 4),
            "agreement": round(self.agreement, 4),
            "weights": self.weights,
            "stances": {
                stage: {"bias": s.bias, "confidence": round(s.confidence, 3)}
                for stage, s in self.stances.items()
            },
        }


def instrument_weights(instrument: str) -> dict[str, float]:
    return dict(_CLASS_WEIGHTS[classify_instrument(instrument)])


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def stage_stance(stage: str, output: Mapping[str, Any] | None) -> Stance:
    """Reduce one stage output to a directional stance."""
    if not output:
        return Stance("NEUTRAL", 0.5)

    if stage == "security":
        # A calm tape favors continuation longs; a stressed one favors caution.
        score = float(output.get("security_score", 5.0))
        bias = "BULLISH" if score >= 7 else "BEARISH" if score <= 3 else "NEUTRAL"
        return Stance(bias, _clamp(abs(score - 5.0) / 5.0 + 0.3))

    if stage == "macro":
        sentiment = str(output.get("sentiment", "NEUTRAL"))
        bias = "BULLISH" if "BULLISH" in sentiment else "BEARISH" if "BEARISH" in sentiment else "NEUTRAL"
        return Stance(bias, _clamp(float(output.get("macro_score", 5.0)) / 10))

    if stage == "flux":
        return Stance(
            str(output.get("institutional_pressure", "NEUTRAL")),
            _clamp(float(output.get("flux_score", 5.0)) / 10),
        )

    if stage == "mag7":
        return Stance(
            str(output.get("overall_sentiment", "NEUTRAL")),
            _clamp(float(output.get("leader_score", 5.0)) / 10),
        )

    if stage == "technical":
        trend = output.get("trend") or {}
        direction = trend.get("direction", "SIDEWAYS")
        bias = {"UPTREND": "BULLISH", "DOWNTREND": "BEARISH"}.get(direction, "NEUTRAL")
        return Stance(bias, _clamp(float(trend.get("strength", 0.5))))

    raise ValueError(f"Unknown stage: {stage}")


def calculate_sentiment(
    instrument: str,
    outputs: Mapping[str, Mapping[str, Any] | None],
    weights: Mapping[str, float] | None = None,
) -> SentimentSummary:
    weights = dict(weights or instrument_weights(instrument))
    stances = {stage: stage_stance(stage, outputs.get(stage)) for stage in UPSTREAM_STAGES}

    score = sum(_BIAS_SCORE.get(s.bias, 0.0) * weights.get(stage, 0.0) for stage, s in stances.items())
    if score > BULLISH_THRESHOLD:
        bias = "BULLISH"
    elif score < BEARISH_THRESHOLD:
        bias = "BEARISH"
    else:
        bias = "NEUTRAL"

    votes = Counter(s.bias for s in stances.values())
    majority_share = votes.most_common(1)[0][1] / len(stances)
    mean_confidence = sum(s.confidence for s in stances.values()) / len(stances)
    agreement = majority_share * mean_confidence

    aligned_weight = sum(weights.get(stage, 0.0) for stage, s in stances.items() if s.bias == bias)
    confidence = _clamp(0.5 * aligned_weight + 0.5 * agreement)

    return SentimentSummary(
        bias=bias,
        score=score,
        confidence=confidence,
        agreement=agreement,
        weights=weights,
        stances=stances,
    )
