"""
Shared analysis stage flow.

Every stage runs the same sequence:

1. look up the stage cache (key = stage + instrument + date + fingerprint);
   on a miss only one caller per key computes, the others wait for its result
2. fetch the stage's market data; on failure return a degraded result
3. take rate-limit budget for the AI call and prompt the model
4. validate the reply, re-prompting with the errors a bounded number of
   times, then fall back to a deterministic result
5. cache only results the model actually computed
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, ClassVar, Generic, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.cache.cache import Cache, params_fingerprint
from app.cache.rate_limit import MultiWindowRateLimiter, ai_scopes, get_rate_limiter
from app.core.config import settings
from app.core.exceptions import UpstreamUnavailableError
from app.core.logging import get_logger
from app.services.ai.gateway import AIGateway, get_ai_gateway
from app.services.ai.tokens import estimate_request_tokens
from app.services.ai.types import ChatMessage, GenerateOptions
from app.services.ai.validator import build_corrective_prompt, validate_output
from app.services.market_data import MarketDataError, MarketDataService, get_market_data_service


logger = get_logger("daily_bias.stage")

T = TypeVar("T", bound=BaseModel)

STAGE_CACHE_PREFIX = "daily_bias"
PROMPT_VERSION = "2"

_SYSTEM_PREAMBLE = (
    "You are a professional market analyst preparing a pre-market daily bias. "
    "Base every statement only on the data supplied in the prompt. "
    "Respond with a single JSON object using exactly the snake_case keys of the schema. "
    "Never include URLs or cite outside sources."
)


class StageSource(str, Enum):
    CACHE_HIT = "cache_hit"
    COMPUTED = "computed"
    DEGRADED = "degraded"
    FALLBACK = "fallback"


class StageDataUnavailable(Exception):
    """The data a stage needs could not be fetched."""


@dataclass
class StageContext:
    instrument: str
    analysis_date: date
    user_id: Optional[str] = None
    upstream: dict[str, "StageResult"] = field(default_factory=dict)


@dataclass
class StageResult(Generic[T]):
    stage: str
    output: T
    source: StageSource
    cache_key: str
    attempts: int = 0
    provider: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    def output_dict(self) -> dict[str, Any]:
        return self.output.model_dump(mode="json")


class AnalysisStage(ABC, Generic[T]):
    """Base class for the six analysis stages."""

    name: ClassVar[str]
    output_model: ClassVar[type[BaseModel]]
    schema_hint: ClassVar[str]
    ttl_setting: ClassVar[str]
    temperature: ClassVar[float] = 0.4
    max_tokens: ClassVar[int] = 1500
    keeps_last_known: ClassVar[bool] = False

    def __init__(
        self,
        gateway: AIGateway | None = None,
        rate_limiter: MultiWindowRateLimiter | None = None,
        cache: Cache | None = None,
        market_data: MarketDataService | None = None,
    ):
        self._gateway = gateway
        self._rate_limiter = rate_limiter
        self._market_data = market_data
        self.cache = cache or Cache(prefix=STAGE_CACHE_PREFIX, default_ttl=self.ttl)

    @property
    def gateway(self) -> AIGateway:
        return self._gateway or get_ai_gateway()

    @property
    def rate_limiter(self) -> MultiWindowRateLimiter:
        return self._rate_limiter or get_rate_limiter()

    @property
    def market_data(self) -> MarketDataService:
        return self._market_data or get_market_data_service()

    @property
    def ttl(self) -> int:
        return int(getattr(settings, self.ttl_setting))

    @property
    def max_attempts(self) -> int:
        return 1 + settings.daily_bias_max_corrections

    # ------------------------------------------------------------------ hooks

    def extra_params(self, ctx: StageContext) -> dict[str, Any]:
        """Stage-specific inputs that change the result (part of the cache key)."""
        return {}

    @abstractmethod
    async def fetch_data(self, ctx: StageContext) -> dict[str, Any]:
        """Gather the stage's inputs; raise MarketDataError/StageDataUnavailable on failure."""

    @abstractmethod
    def build_prompt(self, ctx: StageContext, data: dict[str, Any]) -> str: ...

    @abstractmethod
    async def degraded_output(self, ctx: StageContext, reason: str) -> T:
        """Schema-valid output when the stage's data could not be fetched."""

    @abstractmethod
    def fallback_output(self, ctx: StageContext, data: dict[str, Any]) -> T:
        """Schema-valid output computed without the model."""

    def postprocess(self, ctx: StageContext, data: dict[str, Any], output: T) -> T:
        return output

    async def on_computed(self, ctx: StageContext, output: T) -> None:
        """Called after a computed result was cached."""
        if self.keeps_last_known:
            await self.cache.set(
                self.last_known_key(ctx), output.model_dump(mode="json"), settings.last_known_cache_ttl
            )

    def last_known_key(self, ctx: StageContext) -> str:
        return f"last_known:{self.name}:{ctx.instrument}"

    async def load_last_known(self, ctx: StageContext) -> Optional[T]:
        """Most recent computed output for the instrument, from any date."""
        cached = await self.cache.get(self.last_known_key(ctx))
        if cached is None:
            return None
        try:
            return self.output_model.model_validate(cached)
        except PydanticValidationError:
            return None

    # ------------------------------------------------------------------ flow

    def cache_key(self, ctx: StageContext) -> str:
        params = {
            "instrument": ctx.instrument,
            "date": ctx.analysis_date.isoformat(),
            "prompt_version": PROMPT_VERSION,
            **self.extra_params(ctx),
        }
        return f"{self.name}:{ctx.instrument}:{ctx.analysis_date.isoformat()}:{params_fingerprint(params)[:32]}"

    def system_prompt(self) -> str:
        return f"{_SYSTEM_PREAMBLE}\n\nJSON schema:\n{self.schema_hint}"

    async def _take_budget(self, ctx: StageContext, messages: list[ChatMessage]) -> None:
        tokens = estimate_request_tokens(messages, self.max_tokens)
        await self.rate_limiter.acquire(
            ai_scopes(ctx.user_id),
            cost=1,
            tokens=tokens,
            max_wait=settings.ai_rate_limit_max_wait,
        )

    def _result(
        self,
        ctx: StageContext,
        output: T,
        source: StageSource,
        key: str,
        attempts: int = 0,
        provider: Optional[str] = None,
        errors: Optional[list[str]] = None,
    ) -> StageResult[T]:
        logger.info(
            f"Stage {self.name} finished",
            extra={
                "stage": self.name,
                "instrument": ctx.instrument,
                "source": source.value,
                "attempts": attempts,
                "provider": provider,
            },
        )
        return StageResult(
            stage=self.name,
            output=output,
            source=source,
            cache_key=key,
            attempts=attempts,
            provider=provider,
            errors=errors or [],
        )

    async def analyze(self, ctx: StageContext) -> StageResult[T]:
        key = self.cache_key(ctx)
        computed: list[StageResult[T]] = []

        async def compute() -> Optional[dict[str, Any]]:
            result = await self._compute(ctx, key)
            computed.append(result)
            return result.output_dict() if result.source is StageSource.COMPUTED else None

        cached = await self.cache.get_or_set_with_lock(
            key, compute, ttl=self.ttl, lock_timeout=settings.daily_bias_stage_lock_timeout
        )
        if computed:
            result = computed[0]
            if result.source is StageSource.COMPUTED:
                await self.on_computed(ctx, result.output)
            return result

        try:
            return self._result(ctx, self.output_model.model_validate(cached), StageSource.CACHE_HIT, key)
        except PydanticValidationError:
            logger.warning("Discarding cached stage output that no longer validates", extra={"key": key})
            await self.cache.delete(key)

        result = await self._compute(ctx, key)
        if result.source is StageSource.COMPUTED:
            await self.cache.set(key, result.output_dict(), self.ttl)
            await self.on_computed(ctx, result.output)
        return result

    async def _compute(self, ctx: StageContext, key: str) -> StageResult[T]:
        try:
            data = await self.fetch_data(ctx)
        except (MarketDataError, StageDataUnavailable) as e:
            logger.warning(
                f"Stage {self.name} data unavailable: {e}",
                extra={"stage": self.name, "instrument": ctx.instrument},
            )
            output = await self.degraded_output(ctx, str(e))
            return self._result(ctx, output, StageSource.DEGRADED, key, errors=[str(e)])

        system = ChatMessage("system", self.system_prompt())
        prompt = self.build_prompt(ctx, data)
        messages = [system, ChatMessage("user", prompt)]
        options = GenerateOptions(temperature=self.temperature, max_tokens=self.max_tokens)
        errors: list[str] = []
        provider: Optional[str] = None
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                messages = [system, ChatMessage("user", build_corrective_prompt(prompt, errors))]
            await self._take_budget(ctx, messages)
            attempts = attempt

            try:
                response = await self.gateway.generate(messages, options)
            except UpstreamUnavailableError as e:
                errors = [e.message]
                break

            provider = response.provider.value
            outcome = validate_output(response.text, self.output_model)
            if outcome.ok:
                output = self.postprocess(ctx, data, outcome.value)
                return self._result(
                    ctx, output, StageSource.COMPUTED, key, attempts=attempts, provider=provider
                )

            errors = outcome.errors
            logger.warning(
                f"Stage {self.name} output failed validation",
                extra={"stage": self.name, "attempt": attempt, "errors": errors[:5]},
            )

        output = self.fallback_output(ctx, data)
        return self._result(
            ctx, output, StageSource.FALLBACK, key, attempts=attempts, provider=provider, errors=errors
        )


def as_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)
