"""Daily bias schemas: per-stage AI output models and API models."""

from __future__ import annotations

from datetime import date, datetime
from datetime import date as DateType
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Bias = Literal["BULLISH", "BEARISH", "NEUTRAL"]
Importance = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]


class _StageOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")


# =============================================================================
# Stage outputs
# =============================================================================


class SecurityAnalysis(_StageOutput):
    """Instrument volatility and risk posture."""

    volatility_index: float = Field(..., ge=0, le=100)
    risk_level: Importance
    security_score: float = Field(..., ge=0, le=10)
    summary: str = Field(..., min_length=1, max_length=1500)
    risks: list[str] = Field(default_factory=list, max_length=10)

    @field_validator("risk_level", mode="before")
    @classmethod
    def normalize_risk_level(cls, v):
        if isinstance(v, str):
            v = v.strip().upper()
            if v == "EXTREME":
                return "CRITICAL"
        return v


class EconomicEventItem(_StageOutput):
    event: str = Field(..., min_length=1)
    time: Optional[str] = None
    importance: Importance
    country: Optional[str] = None
    forecast: Optional[str] = None
    previous: Optional[str] = None
    actual: Optional[str] = None

    @field_validator("importance", mode="before")
    @classmethod
    def normalize_importance(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("forecast", "previous", "actual", mode="before")
    @classmethod
    def stringify(cls, v):
        return None if v is None or v == "" else str(v)


class MacroAnalysis(_StageOutput):
    """Economic calendar context."""

    economic_events: list[EconomicEventItem] = Field(default_factory=list, max_length=50)
    macro_score: float = Field(..., ge=0, le=10)
    sentiment: Literal["VERY_BEARISH", "BEARISH", "NEUTRAL", "BULLISH", "VERY_BULLISH"]
    summary: str = Field(..., min_length=1, max_length=1500)
    key_themes: list[str] = Field(default_factory=list, max_length=10)


class VolumeProfile(_StageOutput):
    total_volume: float = Field(..., ge=0)
    average_volume: float = Field(..., ge=0)
    volume_ratio: float = Field(..., ge=0)


class OrderFlow(_StageOutput):
    buy_pressure: float = Field(..., ge=0, le=1)
    sell_pressure: float = Field(..., ge=0, le=1)


class FluxAnalysis(_StageOutput):
    """Volume and order flow."""

    volume_profile: VolumeProfile
    order_flow: OrderFlow
    institutional_pressure: Bias
    flux_score: float = Field(..., ge=0, le=10)
    summary: str = Field(..., min_length=1, max_length=1500)


class LeaderCorrelation(_StageOutput):
    symbol: Literal["AAPL", "MSFT", "GOOGL", "AMZN", "META", "NVDA", "TSLA"]
    correlation: float = Field(..., ge=-1, le=1)
    change_percent: float


class Mag7Analysis(_StageOutput):
    """Correlation with the Magnificent Seven leaders."""

    correlations: list[LeaderCorrelation] = Field(default_factory=list, max_length=7)
    leader_score: float = Field(..., ge=0, le=10)
    overall_sentiment: Bias
    summary: str = Field(..., min_length=1, max_length=1500)


class PriceLevel(_StageOutput):
    price: float = Field(..., gt=0)
    strength: float = Field(..., ge=0, le=1)


class TrendInfo(_StageOutput):
    direction: Literal["UPTREND", "DOWNTREND", "SIDEWAYS"]
    strength: float = Field(..., ge=0, le=1)
    timeframe: str = "1h"


class TechnicalAnalysis(_StageOutput):
    """Support, resistance and trend."""

    support_levels: list[PriceLevel] = Field(default_factory=list, max_length=10)
    resistance_levels: list[PriceLevel] = Field(default_factory=list, max_length=10)
    trend: TrendInfo
    technical_score: float = Field(..., ge=0, le=10)
    summary: str = Field(..., min_length=1, max_length=1500)


class StepWeights(_StageOutput):
    security: float = Field(..., ge=0, le=1)
    macro: float = Field(..., ge=0, le=1)
    flux: float = Field(..., ge=0, le=1)
    mag7: float = Field(..., ge=0, le=1)
    technical: float = Field(..., ge=0, le=1)

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> "StepWeights":
        total = self.security + self.macro + self.flux + self.mag7 + self.technical
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"step weights must sum to 1.0 (got {total:.3f})")
        return self


class OpeningConfirmation(_StageOutput):
    expected_direction: Literal["UP", "DOWN", "INDETERMINATE"]
    confirmation_score: float = Field(..., ge=0, le=1)
    time_to_confirm: str = Field(..., min_length=1)
    confirmation_criteria: list[str] = Field(..., min_length=1, max_length=10)


class TradingRecommendations(_StageOutput):
    primary: str = Field(..., min_length=1)
    target_upside: Optional[float] = None
    target_downside: Optional[float] = None
    stop_loss: Optional[float] = None
    risk_reward_ratio: Optional[float] = Field(default=None, ge=0)
    alternative_setups: list[str] = Field(default_factory=list, max_length=5)


class SynthesisDetail(_StageOutput):
    summary: str = Field(..., min_length=1, max_length=800)
    step_weights: StepWeights
    agreement_level: float = Field(..., ge=0, le=1)
    key_thesis_points: list[str] = Field(..., min_length=1, max_length=7)
    counter_arguments: list[str] = Field(..., min_length=1, max_length=5)
    trading_recommendations: TradingRecommendations


class SynthesisAnalysis(_StageOutput):
    """Final daily bias combining the five upstream stages."""

    final_bias: Bias
    confidence: float = Field(..., ge=0, le=1)
    opening_confirmation: OpeningConfirmation
    analysis: SynthesisDetail


# =============================================================================
# API models
# =============================================================================


class AnalyzeRequest(BaseModel):
    instrument: str = Field(..., min_length=1, max_length=20, examples=["NQ1"])
    date: Optional[DateType] = Field(default=None, description="Trading day (defaults to today, UTC)")
    force_refresh: bool = False


class AnalysisRunResponse(BaseModel):
    id: int
    user_id: str
    instrument: str
    analysis_date: date
    status: str
    security: Optional[dict[str, Any]] = None
    macro: Optional[dict[str, Any]] = None
    flux: Optional[dict[str, Any]] = None
    mag7: Optional[dict[str, Any]] = None
    technical: Optional[dict[str, Any]] = None
    synthesis: Optional[dict[str, Any]] = None
    stage_sources: dict[str, str] = Field(default_factory=dict)
    bias: Optional[Bias] = None
    confidence: Optional[float] = None
    ai_provider: Optional[str] = None
    processing_time_ms: Optional[int] = None
    cache_hit: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AnalysisHistoryResponse(BaseModel):
    items: list[AnalysisRunResponse]
    total: int


class InstrumentsResponse(BaseModel):
    instruments: list[str]
