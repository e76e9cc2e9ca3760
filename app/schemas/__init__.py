"""Pydantic schemas for API request/response validation."""

from .broker import (
    ApiKeyConnectRequest,
    BrokerConnectionResponse,
    BrokerMetricsResponse,
    SyncRunResponse,
)
from .common import ErrorResponse, HealthResponse, MessageResponse
from .daily_bias import (
    AnalysisRunResponse,
    AnalyzeRequest,
    SecurityAnalysis,
    SynthesisAnalysis,
)


__all__ = [
    "AnalysisRunResponse",
    "AnalyzeRequest",
    "ApiKeyConnectRequest",
    "BrokerConnectionResponse",
    "BrokerMetricsResponse",
    "ErrorResponse",
    "HealthResponse",
    "MessageResponse",
    "SecurityAnalysis",
    "SynthesisAnalysis",
    "SyncRunResponse",
]
