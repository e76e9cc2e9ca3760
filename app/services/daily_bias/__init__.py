"""Daily bias analysis pipeline."""

from .base import AnalysisStage, StageContext, StageDataUnavailable, StageResult, StageSource
from .flux import FluxStage
from .instruments import SUPPORTED_INSTRUMENTS, is_supported, normalize_instrument
from .macro import MacroStage
from .mag7 import Mag7Stage
from .orchestrator import (
    DailyBiasOrchestrator,
    DailyBiasOutcome,
    apply_confidence_penalties,
    get_orchestrator,
    parse_analysis_date,
)
from .security import SecurityStage
from .synthesis import SynthesisStage
from .technical import TechnicalStage


__all__ = [
    "AnalysisStage",
    "DailyBiasOrchestrator",
    "DailyBiasOutcome",
    "FluxStage",
    "MacroStage",
    "Mag7Stage",
    "SUPPORTED_INSTRUMENTS",
    "SecurityStage",
    "StageContext",
    "StageDataUnavailable",
    "StageResult",
    "StageSource",
    "SynthesisStage",
    "TechnicalStage",
    "apply_confidence_penalties",
    "get_orchestrator",
    "is_supported",
    "normalize_instrument",
    "parse_analysis_date",
]
