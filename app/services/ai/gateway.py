"""
AI provider gateway with per-provider circuit breakers and failover.

The gateway tries providers in preference order. Each provider call is
bounded by a timeout and retried on transient errors; when a provider
still fails, its breaker records the failure and the next provider is
tried. Only when every provider failed (or is open) does the gateway
raise ``UpstreamUnavailableError``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.core.config import settings
from app.core.exceptions import ConfigurationError, UpstreamUnavailableError
from app.core.logging import get_logger
from app.services.resilience import CallStats, CircuitBreaker, CircuitOpenError

from .providers import ChatProvider, build_configured_providers
from .types import (
    AIProvider,
    AIResponse,
    ChatMessage,
    GenerateOptions,
    ProviderError,
    TransientProviderError,
)


logger = get_logger("ai.gateway")


@dataclass
class _ProviderState:
    provider: ChatProvider
    breaker: CircuitBreaker
    stats: CallStats = field(default_factory=CallStats)


class AIGateway:
    """Routes generation requests across configured providers."""

    def __init__(
        self,
        providers: dict[AIProvider, ChatProvider],
        order: Sequence[AIProvider] | None = None,
        *,
        failure_threshold: int | None = None,
        recovery_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_initial_delay: float | None = None,
        retry_max_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retry_attempts = retry_attempts or settings.ai_transient_retries
        self.retry_initial_delay = (
            settings.ai_retry_initial_delay if retry_initial_delay is None else retry_initial_delay
        )
        self.retry_max_delay = settings.ai_retry_max_delay if retry_max_delay is None else retry_max_delay

        preferred = list(order or [])
        self._order = [p for p in preferred if p in providers] + [
            p for p in providers if p not in preferred
        ]
        self._states = {
            name: _ProviderState(
                provider=provider,
                breaker=CircuitBreaker(
                    failure_threshold=failure_threshold or settings.ai_circuit_failure_threshold,
                    recovery_timeout=recovery_timeout or settings.ai_circuit_recovery_seconds,
                    name=f"ai.{name.value}",
                    clock=clock,
                ),
            )
            for name, provider in providers.items()
        }

    @property
    def providers(self) -> list[AIProvider]:
        return list(self._order)

    def breaker(self, provider: AIProvider) -> CircuitBreaker:
        return self._states[provider].breaker

    def is_healthy(self, provider: AIProvider) -> bool:
        state = self._states.get(provider)
        return state is not None and state.breaker.is_healthy

    def any_healthy(self) -> bool:
        return any(self.is_healthy(p) for p in self._order)

    def _ordered(self, preferred: AIProvider | None) -> list[AIProvider]:
        if preferred is None or preferred not in self._states:
            return list(self._order)
        return [preferred] + [p for p in self._order if p != preferred]

    async def _call(
        self, state: _ProviderState, messages: Sequence[ChatMessage], options: GenerateOptions
    ) -> AIResponse:
        timeout = options.timeout or settings.ai_request_timeout
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry_initial_delay,
                max=self.retry_max_delay,
                jitter=self.retry_initial_delay,
            ),
            retry=retry_if_exception_type((TransientProviderError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                return await asyncio.wait_for(state.provider.generate(messages, options), timeout=timeout)
        raise AssertionError("unreachable")

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        options: GenerateOptions | None = None,
    ) -> AIResponse:
        if not self._states:
            raise ConfigurationError(
                "No AI provider API key configured",
                error_code="MISSING_AI_PROVIDER_KEY",
            )

        options = options or GenerateOptions()
        if options.temperature is None:
            options.temperature = settings.ai_default_temperature
        if options.max_tokens is None:
            options.max_tokens = settings.ai_default_max_tokens

        failures: dict[str, str] = {}
        for name in self._ordered(options.preferred_provider):
            state = self._states[name]
            try:
                state.breaker.guard()
            except CircuitOpenError as e:
                failures[name.value] = e.message
                continue

            start = time.perf_counter()
            try:
                response = await self._call(state, messages, options)
            except (ProviderError, asyncio.TimeoutError) as e:
                latency_ms = (time.perf_counter() - start) * 1000
                state.breaker.record_failure(e)
                state.stats.record(latency_ms, ok=False)
                failures[name.value] = str(e) or type(e).__name__
                logger.warning(
                    f"AI provider {name.value} failed, failing over",
                    extra={"provider": name.value, "error": failures[name.value]},
                )
                continue

            latency_ms = (time.perf_counter() - start) * 1000
            state.breaker.record_success()
            state.stats.record(latency_ms, ok=True)
            response.latency_ms = int(latency_ms)
            logger.debug(
                "AI generation succeeded",
                extra={
                    "provider": name.value,
                    "latency_ms": response.latency_ms,
                    "input_tokens": response.usage.input_tokens,
                    "output_tokens": response.usage.output_tokens,
                },
            )
            return response

        raise UpstreamUnavailableError(
            "All AI providers are unavailable",
            details={"providers": failures},
        )

    def get_health(self) -> dict[str, Any]:
        return {
            name.value: {
                "healthy": state.breaker.is_healthy,
                "model": state.provider.model,
                "circuit": state.breaker.get_stats(),
                **state.stats.to_dict(),
            }
            for name, state in self._states.items()
        }


_gateway: AIGateway | None = None


def get_ai_gateway() -> AIGateway:
    """Process-wide gateway built from settings."""
    global _gateway
    if _gateway is None:
        order = []
        for name in settings.ai_provider_order:
            try:
                order.append(AIProvider(name))
            except ValueError:
                logger.warning(f"Ignoring unknown AI provider in order: {name}")
        _gateway = AIGateway(build_configured_providers(), order)
    return _gateway


def set_ai_gateway(gateway: AIGateway | None) -> None:
    global _gateway
    _gateway = gateway
