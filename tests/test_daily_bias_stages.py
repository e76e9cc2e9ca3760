"""
Tests for the analysis stage flow: caching, correction, degradation and fallback.
"""

import asyncio
import json
from datetime import date
from unittest.mock import AsyncMock

import pytest

from app.cache.rate_limit import MultiWindowRateLimiter
from app.services.ai.tokens import estimate_request_tokens
from app.services.ai.types import AIProvider
from app.services.daily_bias.base import StageContext, StageResult, StageSource
from app.services.daily_bias.flux import FluxStage
from app.services.daily_bias.macro import MacroStage
from app.services.daily_bias.mag7 import Mag7Stage
from app.services.daily_bias.security import SecurityStage
from app.services.daily_bias.synthesis import SynthesisStage
from app.services.daily_bias.technical import TechnicalStage

from tests.conftest import STAGE_REPLIES, FakeMarketData, ScriptedProvider, make_bars, stage_reply


DAY = date(2026, 1, 20)


class SlowMarketData(FakeMarketData):
    async def get_quote(self, ticker):
        await asyncio.sleep(0.05)
        return await super().get_quote(ticker)


def ctx(instrument: str = "NQ1", day: date = DAY, **kwargs) -> StageContext:
    return StageContext(instrument=instrument, analysis_date=day, user_id="user-1", **kwargs)


@pytest.fixture
def provider():
    return ScriptedProvider(AIProvider.GEMINI, default=stage_reply)


@pytest.fixture
def gateway(make_gateway, provider):
    return make_gateway(provider)


class TestStageCaching:
    @pytest.mark.asyncio
    async def test_computed_then_cache_hit(self, gateway, provider):
        """A repeated request is served from cache without calling the model."""
        stage = SecurityStage(gateway=gateway, market_data=FakeMarketData())

        first = await stage.analyze(ctx())
        second = await stage.analyze(ctx())

        assert first.source == StageSource.COMPUTED
        assert first.provider == "gemini"
        assert second.source == StageSource.CACHE_HIT
        assert second.output == first.output
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_key_varies_by_date_and_instrument(self, gateway, provider):
        stage = SecurityStage(gateway=gateway, market_data=FakeMarketData())

        keys = {
            stage.cache_key(ctx()),
            stage.cache_key(ctx(day=date(2026, 1, 19))),
            stage.cache_key(ctx(instrument="ES1")),
        }
        await stage.analyze(ctx())
        other_day = await stage.analyze(ctx(day=date(2026, 1, 19)))

        assert len(keys) == 3
        assert other_day.source == StageSource.COMPUTED
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_key_includes_stage_parameters(self):
        macro = MacroStage()
        eur = macro.cache_key(ctx(instrument="EUR/USD"))
        assert eur.startswith("macro:EUR/USD:2026-01-20:")
        assert macro.extra_params(ctx(instrument="EUR/USD")) == {"currencies": ["USD", "EUR"]}

    @pytest.mark.asyncio
    async def test_invalid_cached_value_is_recomputed(self, gateway, provider, fake_valkey):
        stage = SecurityStage(gateway=gateway, market_data=FakeMarketData())
        key = stage.cache.full_key(stage.cache_key(ctx()))
        fake_valkey.store[key] = json.dumps({"volatility_index": "not a number"})

        result = await stage.analyze(ctx())

        assert result.source == StageSource.COMPUTED
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_computation(self, gateway, provider):
        stage = SecurityStage(gateway=gateway, market_data=SlowMarketData())

        results = await asyncio.gather(stage.analyze(ctx()), stage.analyze(ctx()))

        assert sorted(r.source.value for r in results) == ["cache_hit", "computed"]
        assert results[0].output == results[1].output
        assert len(provider.calls) == 1


class TestStageBudget:
    @pytest.mark.asyncio
    async def test_budget_covers_the_prompt_actually_sent(self, gateway, provider):
        limiter = MultiWindowRateLimiter()
        limiter.acquire = AsyncMock()
        stage = SecurityStage(gateway=gateway, rate_limiter=limiter, market_data=FakeMarketData())

        await stage.analyze(ctx())

        limiter.acquire.assert_awaited_once()
        expected = estimate_request_tokens(provider.calls[0], stage.max_tokens)
        assert limiter.acquire.await_args.kwargs["tokens"] == expected

    @pytest.mark.asyncio
    async def test_degraded_stage_takes_no_budget(self, gateway):
        limiter = MultiWindowRateLimiter()
        limiter.acquire = AsyncMock()
        stage = SecurityStage(gateway=gateway, rate_limiter=limiter, market_data=FakeMarketData(fail=["quote"]))

        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        limiter.acquire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_every_attempt_takes_budget(self, make_gateway):
        limiter = MultiWindowRateLimiter()
        limiter.acquire = AsyncMock()
        provider = ScriptedProvider(AIProvider.GEMINI, ["not json", stage_reply])
        stage = SecurityStage(gateway=make_gateway(provider), rate_limiter=limiter, market_data=FakeMarketData())

        await stage.analyze(ctx())

        assert limiter.acquire.await_count == 2


class TestStageCorrection:
    @pytest.mark.asyncio
    async def test_corrective_reprompt(self, make_gateway):
        """Validation errors are fed back to the model once more."""
        provider = ScriptedProvider(AIProvider.GEMINI, ["not json", stage_reply])
        stage = SecurityStage(gateway=make_gateway(provider), market_data=FakeMarketData())

        result = await stage.analyze(ctx())

        assert result.source == StageSource.COMPUTED
        assert result.attempts == 2
        corrective = provider.calls[1][1].content
        assert "response is not a JSON object" in corrective

    @pytest.mark.asyncio
    async def test_fallback_after_repeated_invalid_output(self, make_gateway, fake_valkey):
        provider = ScriptedProvider(AIProvider.GEMINI, default='{"volatility_index": 500}')
        stage = SecurityStage(gateway=make_gateway(provider), market_data=FakeMarketData())

        result = await stage.analyze(ctx())

        assert result.source == StageSource.FALLBACK
        assert result.attempts == 3
        assert result.errors
        # quote: high 21680, low 21420, +0.465%
        assert result.output.volatility_index == 16.0
        assert result.output.risk_level == "LOW"
        assert stage.cache.full_key(stage.cache_key(ctx())) not in fake_valkey.store

    @pytest.mark.asyncio
    async def test_fallback_is_not_cached(self, make_gateway):
        provider = ScriptedProvider(AIProvider.GEMINI, default="{}")
        stage = SecurityStage(gateway=make_gateway(provider), market_data=FakeMarketData())

        await stage.analyze(ctx())
        provider.default = stage_reply
        second = await stage.analyze(ctx())

        assert second.source == StageSource.COMPUTED

    @pytest.mark.asyncio
    async def test_upstream_unavailable_falls_back(self, make_gateway):
        provider = ScriptedProvider(AIProvider.GEMINI)
        stage = SecurityStage(gateway=make_gateway(provider), market_data=FakeMarketData())

        result = await stage.analyze(ctx())

        assert result.source == StageSource.FALLBACK
        assert result.attempts == 1
        assert result.errors == ["All AI providers are unavailable"]


class TestStageDegradation:
    @pytest.mark.asyncio
    async def test_missing_quote_degrades_security(self, gateway, provider):
        stage = SecurityStage(gateway=gateway, market_data=FakeMarketData(fail=["quote"]))

        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        assert result.output.volatility_index == 50
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_calendar_outage_degrades_macro(self, gateway):
        stage = MacroStage(gateway=gateway, market_data=FakeMarketData(fail=["calendar"]))

        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        assert result.output.sentiment == "NEUTRAL"
        assert result.output.economic_events == []

    @pytest.mark.asyncio
    async def test_macro_calendar_window(self, gateway):
        data = FakeMarketData()
        stage = MacroStage(gateway=gateway, market_data=data)

        await stage.analyze(ctx())

        _, start, end, currencies = next(call for call in data.calls if call[0] == "calendar")
        assert start < end
        assert start.date() <= DAY <= end.date()
        assert currencies == ("USD",)

    @pytest.mark.asyncio
    async def test_zero_volume_degrades_flux(self, gateway):
        stage = FluxStage(gateway=gateway, market_data=FakeMarketData(bars=make_bars(volume=0)))

        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        assert result.output.order_flow.buy_pressure == 0.5

    @pytest.mark.asyncio
    async def test_mag7_without_quotes_degrades(self, gateway):
        stage = Mag7Stage(gateway=gateway, market_data=FakeMarketData(fail=["quote"]))

        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        assert result.output.overall_sentiment == "NEUTRAL"

    @pytest.mark.asyncio
    async def test_technical_insufficient_bars(self, gateway, provider):
        stage = TechnicalStage(gateway=gateway, market_data=FakeMarketData(bars=make_bars(count=5)))

        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        assert result.output.support_levels == []
        assert result.output.trend.direction == "SIDEWAYS"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_technical_widens_lookback(self, gateway):
        data = FakeMarketData(bars=make_bars(count=15))
        stage = TechnicalStage(gateway=gateway, market_data=data)

        result = await stage.analyze(ctx())

        periods = [call[2] for call in data.calls if call[0] == "bars"]
        assert periods == ["5d", "1mo", "3mo"]
        assert result.source == StageSource.COMPUTED

    @pytest.mark.asyncio
    async def test_technical_uses_last_known_when_data_disappears(self, gateway):
        await TechnicalStage(gateway=gateway, market_data=FakeMarketData()).analyze(ctx(day=date(2026, 1, 19)))

        stage = TechnicalStage(gateway=gateway, market_data=FakeMarketData(fail=["bars"]))
        result = await stage.analyze(ctx())

        assert result.source == StageSource.DEGRADED
        assert result.output.support_levels[0].price == 21450.0
        assert result.output.summary.startswith("Last known technical picture")


def upstream_results(technical_source: StageSource = StageSource.COMPUTED) -> dict[str, StageResult]:
    from app.schemas.daily_bias import (
        FluxAnalysis,
        MacroAnalysis,
        Mag7Analysis,
        SecurityAnalysis,
        TechnicalAnalysis,
    )

    models = {
        "security": SecurityAnalysis,
        "macro": MacroAnalysis,
        "flux": FluxAnalysis,
        "mag7": Mag7Analysis,
        "technical": TechnicalAnalysis,
    }
    return {
        stage: StageResult(
            stage=stage,
            output=model.model_validate(STAGE_REPLIES[stage]),
            source=technical_source if stage == "technical" else StageSource.COMPUTED,
            cache_key=f"{stage}:test",
        )
        for stage, model in models.items()
    }


class TestSynthesisStage:
    @pytest.mark.asyncio
    async def test_synthesis_prompt_carries_upstream(self, gateway, provider):
        stage = SynthesisStage(gateway=gateway)

        result = await stage.analyze(ctx(upstream=upstream_results()))

        assert result.source == StageSource.COMPUTED
        assert result.output.final_bias == "BULLISH"
        prompt = provider.calls[0][1].content
        assert "Semiconductor leadership carries the index." in prompt
        assert "Weighted sentiment aggregate" in prompt

    @pytest.mark.asyncio
    async def test_unreliable_technical_weight_capped(self, gateway, provider):
        """The model's technical weight is clamped when technical data was missing."""
        stage = SynthesisStage(gateway=gateway)

        result = await stage.analyze(ctx(upstream=upstream_results(StageSource.DEGRADED)))

        weights = result.output.analysis.step_weights
        assert weights.technical == 0.1
        assert sum(weights.model_dump().values()) == pytest.approx(1.0, abs=0.01)
        assert "technical step weight at or below 0.1" in provider.calls[0][1].content

    @pytest.mark.asyncio
    async def test_reliable_technical_weight_untouched(self, gateway):
        stage = SynthesisStage(gateway=gateway)

        result = await stage.analyze(ctx(upstream=upstream_results()))

        assert result.output.analysis.step_weights.technical == 0.2

    @pytest.mark.asyncio
    async def test_cache_key_tracks_upstream(self):
        stage = SynthesisStage()
        computed = stage.cache_key(ctx(upstream=upstream_results()))
        degraded = stage.cache_key(ctx(upstream=upstream_results(StageSource.DEGRADED)))
        assert computed != degraded

    @pytest.mark.asyncio
    async def test_fallback_built_from_sentiment(self, make_gateway):
        provider = ScriptedProvider(AIProvider.GEMINI)
        stage = SynthesisStage(gateway=make_gateway(provider))

        result = await stage.analyze(ctx(upstream=upstream_results()))

        output = result.output
        assert result.source == StageSource.FALLBACK
        assert output.final_bias == "BULLISH"
        assert output.confidence <= 0.5
        assert output.opening_confirmation.expected_direction == "UP"
        assert sum(output.analysis.step_weights.model_dump().values()) == pytest.approx(1.0, abs=1e-3)
        recommendations = output.analysis.trading_recommendations
        assert recommendations.target_upside == 21720.0
        assert recommendations.stop_loss == 21450.0

    @pytest.mark.asyncio
    async def test_missing_upstream_degrades(self, gateway, provider):
        partial = upstream_results()
        del partial["mag7"]
        stage = SynthesisStage(gateway=gateway)

        result = await stage.analyze(ctx(upstream=partial))

        assert result.source == StageSource.DEGRADED
        assert provider.calls == []
