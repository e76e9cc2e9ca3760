"""
Tests for the multi-window sliding rate limiter.
"""

from unittest.mock import AsyncMock, patch

import fakeredis
import pytest

from app.cache.rate_limit import (
    InMemorySlidingWindow,
    MultiWindowRateLimiter,
    RateLimitScope,
    WindowLimit,
    ai_scopes,
    broker_scope,
)
from app.core.exceptions import RateLimitError


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def scope(name: str, *limits: WindowLimit) -> RateLimitScope:
    return RateLimitScope(name, tuple(limits))


class TestInMemorySlidingWindow:
    def test_allows_up_to_limit(self):
        window = InMemorySlidingWindow()
        windows = [("k", 60.0, 3, 1)]

        results = [window.check_and_consume(windows, now=100.0 + i).allowed for i in range(4)]

        assert results == [True, True, True, False]

    def test_window_slides(self):
        """An entry exactly one window old no longer counts."""
        window = InMemorySlidingWindow()
        windows = [("k", 60.0, 1, 1)]

        assert window.check_and_consume(windows, now=100.0).allowed
        denied = window.check_and_consume(windows, now=130.0)
        assert not denied.allowed
        assert denied.retry_after == pytest.approx(30.0)

        assert window.check_and_consume(windows, now=160.0).allowed

    def test_amounts_weigh_entries(self):
        window = InMemorySlidingWindow()

        assert window.check_and_consume([("tokens", 60.0, 1000, 600)], now=1.0).allowed
        assert not window.check_and_consume([("tokens", 60.0, 1000, 500)], now=2.0).allowed
        assert window.check_and_consume([("tokens", 60.0, 1000, 400)], now=3.0).allowed

    def test_denied_call_consumes_nothing(self):
        """All windows pass or none are charged."""
        window = InMemorySlidingWindow()
        wide = ("wide", 60.0, 10, 1)
        narrow = ("narrow", 1.0, 1, 1)

        assert window.check_and_consume([wide, narrow], now=10.0).allowed
        assert not window.check_and_consume([wide, narrow], now=10.5).allowed
        assert not window.check_and_consume([wide, narrow], now=10.6).allowed

        # only the first call was charged against the wide window
        for i in range(9):
            assert window.check_and_consume([wide], now=20.0 + i).allowed
        assert not window.check_and_consume([wide], now=30.0).allowed

    def test_zero_amount_windows_are_skipped(self):
        window = InMemorySlidingWindow()
        assert window.check_and_consume([("tokens", 60.0, 1, 0)], now=1.0).allowed
        assert window.check_and_consume([("tokens", 60.0, 1, 0)], now=2.0).allowed

    def test_clear(self):
        window = InMemorySlidingWindow()
        window.check_and_consume([("k", 60.0, 1, 1)], now=1.0)
        window.clear()
        assert window.check_and_consume([("k", 60.0, 1, 1)], now=2.0).allowed


class TestMultiWindowRateLimiter:
    @pytest.mark.asyncio
    async def test_falls_back_to_memory_when_valkey_fails(self):
        clock = FakeClock()
        limiter = MultiWindowRateLimiter(clock=clock)
        limits = [scope("test", WindowLimit("minute", 60, 2))]

        first = await limiter.check_and_consume(limits)
        await limiter.check_and_consume(limits)
        third = await limiter.check_and_consume(limits)

        assert first.backend == "memory"
        assert first.allowed
        assert not third.allowed

    @pytest.mark.asyncio
    async def test_user_and_global_scopes_checked_together(self):
        clock = FakeClock()
        limiter = MultiWindowRateLimiter(clock=clock)
        global_scope = scope("global", WindowLimit("minute", 60, 3))
        alice = scope("user:alice", WindowLimit("minute", 60, 2))
        bob = scope("user:bob", WindowLimit("minute", 60, 2))

        assert (await limiter.check_and_consume([global_scope, alice])).allowed
        assert (await limiter.check_and_consume([global_scope, alice])).allowed
        assert not (await limiter.check_and_consume([global_scope, alice])).allowed

        assert (await limiter.check_and_consume([global_scope, bob])).allowed
        decision = await limiter.check_and_consume([global_scope, bob])
        assert not decision.allowed
        assert decision.violated == ["tradejournal:rate_limit:global:requests:minute"]

    @pytest.mark.asyncio
    async def test_token_budget(self):
        limiter = MultiWindowRateLimiter(clock=FakeClock())
        limits = [scope("ai", WindowLimit("minute", 60, 100), WindowLimit("minute", 60, 1000, "tokens"))]

        assert (await limiter.check_and_consume(limits, cost=1, tokens=900)).allowed
        assert not (await limiter.check_and_consume(limits, cost=1, tokens=200)).allowed

    @pytest.mark.asyncio
    async def test_valkey_decision_is_used(self):
        client = AsyncMock()
        client.eval.return_value = [0, 1500, ["tradejournal:rate_limit:test:requests:minute"]]
        limiter = MultiWindowRateLimiter(clock=FakeClock())

        with patch("app.cache.rate_limit.get_valkey_client", AsyncMock(return_value=client)):
            decision = await limiter.check_and_consume([scope("test", WindowLimit("minute", 60, 1))])

        assert not decision.allowed
        assert decision.retry_after == 1.5
        assert decision.backend == "valkey"
        args = client.eval.call_args.args
        assert args[1] == 1
        assert args[2] == "tradejournal:rate_limit:test:requests:minute"

    @pytest.mark.asyncio
    async def test_acquire_raises_with_retry_after(self):
        limiter = MultiWindowRateLimiter(clock=FakeClock())
        limits = [scope("test", WindowLimit("minute", 60, 1))]
        await limiter.acquire(limits)

        with pytest.raises(RateLimitError) as exc_info:
            await limiter.acquire(limits, max_wait=0)

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_acquire_waits_for_budget(self):
        """A short wait is absorbed by sleeping instead of failing."""
        clock = FakeClock()
        limiter = MultiWindowRateLimiter(clock=clock)
        limits = [scope("test", WindowLimit("second", 1, 1))]
        await limiter.acquire(limits)

        async def advance(seconds):
            clock.now += seconds

        with patch("app.cache.rate_limit.asyncio.sleep", side_effect=advance) as sleep:
            decision = await limiter.acquire(limits, max_wait=5)

        assert decision.allowed
        sleep.assert_called_once()


class TestValkeyScript:
    """The Lua check-and-consume script run by a Redis-compatible server."""

    @pytest.fixture
    def server(self, monkeypatch):
        client = fakeredis.FakeAsyncRedis(decode_responses=True)

        async def _client():
            return client

        monkeypatch.setattr("app.cache.rate_limit.get_valkey_client", _client)
        return client

    @pytest.mark.asyncio
    async def test_sliding_window(self, server):
        clock = FakeClock(1000.0)
        limiter = MultiWindowRateLimiter(clock=clock)
        limits = [scope("lua", WindowLimit("minute", 60, 3))]

        allowed = []
        for offset in (0.0, 0.1, 0.2):
            clock.now = 1000.0 + offset
            allowed.append(await limiter.check_and_consume(limits))
        clock.now = 1000.3
        denied = await limiter.check_and_consume(limits)

        assert [d.allowed for d in allowed] == [True, True, True]
        assert all(d.backend == "valkey" for d in allowed)
        assert not denied.allowed
        assert denied.backend == "valkey"
        assert denied.retry_after == pytest.approx(59.7, abs=0.01)
        assert denied.violated == ["tradejournal:rate_limit:lua:requests:minute"]

        clock.now = 1060.0
        assert (await limiter.check_and_consume(limits)).allowed

    @pytest.mark.asyncio
    async def test_token_window_and_denied_call_consumes_nothing(self, server):
        clock = FakeClock(1000.0)
        limiter = MultiWindowRateLimiter(clock=clock)
        limits = [scope("lua", WindowLimit("minute", 60, 10), WindowLimit("minute", 60, 1000, "tokens"))]

        assert (await limiter.check_and_consume(limits, tokens=600)).allowed
        denied = await limiter.check_and_consume(limits, tokens=500)

        assert not denied.allowed
        assert denied.violated == ["tradejournal:rate_limit:lua:tokens:minute"]
        assert await server.zcard("tradejournal:rate_limit:lua:requests:minute") == 1
        assert (await limiter.check_and_consume(limits, tokens=400)).allowed

class TestScopes:
    def test_ai_scopes_with_user(self):
        scopes = ai_scopes("user-1")
        assert [s.name for s in scopes] == ["ai:global", "ai:user:user-1"]
        assert {limit.kind for limit in scopes[1].limits} == {"requests", "tokens"}

    def test_ai_scopes_without_user(self):
        assert [s.name for s in ai_scopes(None)] == ["ai:global"]

    def test_broker_scope(self):
        tradestation = broker_scope("TRADESTATION")
        assert tradestation.name == "broker:TRADESTATION"
        assert tradestation.limits[0].window == 60
        assert broker_scope("OTHER").limits[0].limit == 60
