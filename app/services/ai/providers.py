"""
Provider implementations behind the AI gateway.

Each provider exposes ``generate(messages, options) -> AIResponse`` and maps
its transport errors onto ``TransientProviderError`` (worth retrying) or
``ProviderError`` (not worth retrying).
"""

from __future__ import annotations

import time
from typing import Protocol, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from app.core.config import settings
from app.core.logging import get_logger

from .types import (
    AIProvider,
    AIResponse,
    ChatMessage,
    GenerateOptions,
    ProviderError,
    TokenUsage,
    TransientProviderError,
)


logger = get_logger("ai.providers")

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


def _split_system(messages: Sequence[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    return system, [m for m in messages if m.role != "system"]


class ChatProvider(Protocol):
    name: AIProvider
    model: str

    async def generate(self, messages: Sequence[ChatMessage], options: GenerateOptions) -> AIResponse: ...


class OpenAIProvider:
    """OpenAI Responses API via the official SDK."""

    name = AIProvider.OPENAI

    def __init__(self, api_key: str, model: str, client: AsyncOpenAI | None = None):
        self.model = model
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            max_retries=0,  # the gateway owns retries
            http_client=httpx.AsyncClient(
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                timeout=httpx.Timeout(settings.ai_request_timeout, connect=10.0),
            ),
        )

    async def generate(self, messages: Sequence[ChatMessage], options: GenerateOptions) -> AIResponse:
        system, conversation = _split_system(messages)
        params = {
            "model": self.model,
            "input": [{"role": m.role, "content": m.content} for m in conversation],
            "max_output_tokens": options.max_tokens,
            "temperature": options.temperature,
            "store": False,
        }
        if system:
            params["instructions"] = system
        if options.json_mode:
            params["text"] = {"format": {"type": "json_object"}}

        start = time.perf_counter()
        try:
            response = await self._client.responses.create(**params)
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as e:
            raise TransientProviderError(self.name, str(e)) from e
        except openai.APIStatusError as e:
            if e.status_code in _TRANSIENT_STATUS:
                raise TransientProviderError(self.name, str(e), e.status_code) from e
            raise ProviderError(self.name, str(e), e.status_code) from e

        text = response.output_text or ""
        if not text.strip():
            raise TransientProviderError(self.name, "Empty output from API")

        usage = response.usage
        return AIResponse(
            text=text,
            provider=self.name,
            model=self.model,
            usage=TokenUsage(
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            ),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )


class GeminiProvider:
    """Google Gemini ``generateContent`` REST endpoint."""

    name = AIProvider.GEMINI

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self._api_key = api_key
        self._base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            timeout=httpx.Timeout(settings.ai_request_timeout, connect=10.0),
        )

    def _payload(self, messages: Sequence[ChatMessage], options: GenerateOptions) -> dict:
        system, conversation = _split_system(messages)
        payload: dict = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in conversation
            ],
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        if options.json_mode:
            payload["generationConfig"]["responseMimeType"] = "application/json"
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def generate(self, messages: Sequence[ChatMessage], options: GenerateOptions) -> AIResponse:
        url = f"{self._base_url}/models/{self.model}:generateContent"
        start = time.perf_counter()
        try:
            response = await self._client.post(
                url,
                json=self._payload(messages, options),
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.TransportError as e:
            raise TransientProviderError(self.name, f"transport error: {e}") from e

        if response.status_code in _TRANSIENT_STATUS:
            raise TransientProviderError(self.name, f"HTTP {response.status_code}", response.status_code)
        if response.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {response.status_code}", response.status_code)

        try:
            data = response.json()
            candidate = data["candidates"][0]
            text = "".join(part.get("text", "") for part in candidate["content"]["parts"])
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientProviderError(self.name, f"Malformed response: {e}") from e

        if not text.strip():
            raise TransientProviderError(self.name, "Empty output from API")

        usage = data.get("usageMetadata") or {}
        return AIResponse(
            text=text,
            provider=self.name,
            model=self.model,
            usage=TokenUsage(
                input_tokens=int(usage.get("promptTokenCount", 0)),
                output_tokens=int(usage.get("candidatesTokenCount", 0)),
            ),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )


def build_configured_providers() -> dict[AIProvider, ChatProvider]:
    """Providers that have credentials configured."""
    providers: dict[AIProvider, ChatProvider] = {}
    if settings.gemini_api_key:
        providers[AIProvider.GEMINI] = GeminiProvider(settings.gemini_api_key, settings.gemini_model)
    if settings.openai_api_key:
        providers[AIProvider.OPENAI] = OpenAIProvider(settings.openai_api_key, settings.openai_model)
    if not providers:
        logger.warning("No AI provider API key configured")
    return providers
