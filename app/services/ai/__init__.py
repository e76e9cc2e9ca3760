"""AI provider gateway, providers and output validation."""

from .gateway import AIGateway, get_ai_gateway, set_ai_gateway
from .types import (
    AIProvider,
    AIResponse,
    ChatMessage,
    GenerateOptions,
    ProviderError,
    TokenUsage,
    TransientProviderError,
)
from .validator import ValidationOutcome, build_corrective_prompt, extract_json, validate_output


__all__ = [
    "AIGateway",
    "AIProvider",
    "AIResponse",
    "ChatMessage",
    "GenerateOptions",
    "ProviderError",
    "TokenUsage",
    "TransientProviderError",
    "ValidationOutcome",
    "build_corrective_prompt",
    "extract_json",
    "get_ai_gateway",
    "set_ai_gateway",
    "validate_output",
]
