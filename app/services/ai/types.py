"""Types shared by the AI gateway and its providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AIProvider(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


@dataclass(frozen=True)
class ChatMessage:
    role: str  # system | user | assistant
    content: str


@dataclass
class GenerateOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    timeout: float | None = None
    json_mode: bool = True
    preferred_provider: AIProvider | None = None


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class AIResponse:
    text: str
    provider: AIProvider
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "input_tokens": self.usage.input_tokens,
            "output_tokens": self.usage.output_tokens,
            "latency_ms": self.latency_ms,
        }


class ProviderError(Exception):
    """A provider call failed in a way retrying will not fix."""

    def __init__(self, provider: AIProvider, message: str, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider.value}: {message}")


class TransientProviderError(ProviderError):
    """Timeouts, connection resets, 429 and 5xx responses."""
