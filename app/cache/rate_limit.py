"""Multi-window sliding rate limiter backed by Valkey.

A single call checks every window of every scope (for example the global
AI budget and one user's AI budget) and consumes from all of them only if
all pass, inside one Lua script. Token budgets use the same sliding log:
each entry carries an amount, and a window's usage is the sum of its
entry amounts.

When Valkey is unreachable the limiter keeps the same semantics in
process memory so a cache outage never disables throttling.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from app.core.config import settings
from app.core.exceptions import RateLimitError
from app.core.logging import get_logger

from .client import get_valkey_client


logger = get_logger("cache.rate_limit")

RATE_LIMIT_PREFIX = "tradejournal:rate_limit"

SECOND = 1.0
MINUTE = 60.0
HOUR = 3600.0
DAY = 86400.0


@dataclass(frozen=True)
class WindowLimit:
    """``limit`` units per sliding ``window`` seconds; kind is requests or tokens."""

    name: str
    window: float
    limit: int
    kind: str = "requests"


@dataclass(frozen=True)
class RateLimitScope:
    name: str
    limits: tuple[WindowLimit, ...]


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: float = 0.0
    violated: list[str] = field(default_factory=list)
    backend: str = "valkey"


_CHECK_AND_CONSUME = """
local now = tonumber(ARGV[1])
local uid = ARGV[2]
local allowed = 1
local retry = -1
local violated = {}

local function amount_of(member)
    return tonumber(string.match(member, ':(%d+)$'))
end

for i = 1, #KEYS do
    local base = 2 + (i - 1) * 3
    local window = tonumber(ARGV[base + 1])
    local limit = tonumber(ARGV[base + 2])
    local amount = tonumber(ARGV[base + 3])
    if amount > 0 then
        redis.call('ZREMRANGEBYSCORE', KEYS[i], '-inf', now - window)
        local entries = redis.call('ZRANGE', KEYS[i], 0, -1, 'WITHSCORES')
        local used = 0
        for j = 1, #entries, 2 do
            used = used + amount_of(entries[j])
        end
        if used + amount > limit then
            allowed = 0
            table.insert(violated, KEYS[i])
            local excess = used + amount - limit
            local freed = 0
            local wait = window
            for j = 1, #entries, 2 do
                freed = freed + amount_of(entries[j])
                if freed >= excess then
                    wait = tonumber(entries[j + 1]) + window - now
                    break
                end
            end
            if retry < 0 or wait < retry then
                retry = wait
            end
        end
    end
end

if allowed == 1 then
    for i = 1, #KEYS do
        local base = 2 + (i - 1) * 3
        local window = tonumber(ARGV[base + 1])
        local amount = tonumber(ARGV[base + 3])
        if amount > 0 then
            redis.call('ZADD', KEYS[i], now, uid .. ':' .. i .. ':' .. amount)
            redis.call('PEXPIRE', KEYS[i], window)
        end
    end
    retry = 0
end

return {allowed, math.max(retry, 0), violated}
"""


def _window_key(scope: RateLimitScope, limit: WindowLimit) -> str:
    return f"{RATE_LIMIT_PREFIX}:{scope.name}:{limit.kind}:{limit.name}"


class InMemorySlidingWindow:
    """Process-local equivalent of the Lua script."""

    def __init__(self) -> None:
        self._entries: dict[str, deque[tuple[float, int]]] = {}

    def check_and_consume(
        self, windows: Sequence[tuple[str, float, int, int]], now: float
    ) -> RateLimitDecision:
        retry: Optional[float] = None
        violated: list[str] = []

        for key, window, limit, amount in windows:
            if amount <= 0:
                continue
            entries = self._entries.setdefault(key, deque())
            while entries and entries[0][0] <= now - window:
                entries.popleft()
            used = sum(a for _, a in entries)
            if used + amount <= limit:
                continue

            violated.append(key)
            excess = used + amount - limit
            freed = 0
            wait = window
            for ts, a in entries:
                freed += a
                if freed >= excess:
                    wait = ts + window - now
                    break
            retry = wait if retry is None else min(retry, wait)

        if violated:
            return RateLimitDecision(
                allowed=False,
                retry_after=max(retry or 0.0, 0.0),
                violated=violated,
                backend="memory",
            )

        for key, window, _limit, amount in windows:
            if amount > 0:
                self._entries.setdefault(key, deque()).append((now, amount))
        return RateLimitDecision(allowed=True, backend="memory")

    def clear(self) -> None:
        self._entries.clear()


class MultiWindowRateLimiter:
    """Checks and consumes several scopes atomically."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.fallback = InMemorySlidingWindow()

    @staticmethod
    def _windows(
        scopes: Sequence[RateLimitScope], cost: int, tokens: int
    ) -> list[tuple[str, float, int, int]]:
        windows = []
        for scope in scopes:
            for limit in scope.limits:
                amount = tokens if limit.kind == "tokens" else cost
                windows.append((_window_key(scope, limit), limit.window, limit.limit, amount))
        return windows

    async def check_and_consume(
        self,
        scopes: Sequence[RateLimitScope],
        cost: int = 1,
        tokens: int = 0,
    ) -> RateLimitDecision:
        """
        Consume ``cost`` requests and ``tokens`` tokens from every scope.

        Nothing is consumed when any window would be exceeded; the decision
        then carries the earliest time at which a violated window frees up.
        """
        windows = self._windows(scopes, cost, tokens)
        now = self.clock()

        try:
            client = await get_valkey_client()
            args: list = [int(now * 1000), uuid.uuid4().hex]
            for _key, window, limit, amount in windows:
                args.extend([int(window * 1000), limit, amount])
            allowed, retry_ms, violated = await client.eval(
                _CHECK_AND_CONSUME, len(windows), *[w[0] for w in windows], *args
            )
        except Exception as e:
            logger.warning(
                f"Valkey rate limiter unavailable, using in-process windows: {e}",
                extra={"scopes": [s.name for s in scopes]},
            )
            return self.fallback.check_and_consume(windows, now)

        return RateLimitDecision(
            allowed=bool(allowed),
            retry_after=int(retry_ms) / 1000.0,
            violated=list(violated or []),
        )

    async def acquire(
        self,
        scopes: Sequence[RateLimitScope],
        cost: int = 1,
        tokens: int = 0,
        max_wait: float = 0.0,
    ) -> RateLimitDecision:
        """
        Consume budget, sleeping up to ``max_wait`` seconds for it.

        Raises:
            RateLimitError: budget did not free up within ``max_wait``.
        """
        waited = 0.0
        while True:
            decision = await self.check_and_consume(scopes, cost=cost, tokens=tokens)
            if decision.allowed:
                return decision

            retry_after = max(decision.retry_after, 0.001)
            if waited + retry_after > max_wait:
                logger.info(
                    "Rate limit exhausted",
                    extra={
                        "scopes": [s.name for s in scopes],
                        "violated": decision.violated,
                        "retry_after": retry_after,
                    },
                )
                raise RateLimitError(
                    message=f"Rate limit exceeded. Retry in {retry_after:.1f}s.",
                    retry_after=retry_after,
                )
            await asyncio.sleep(retry_after)
            waited += retry_after


def ai_scopes(user_id: Optional[str]) -> list[RateLimitScope]:
    """Global AI budget plus the per-user budget when a user is known."""
    scopes = [
        RateLimitScope(
            "ai:global",
            (
                WindowLimit("second", SECOND, settings.ai_global_per_second),
                WindowLimit("minute", MINUTE, settings.ai_global_per_minute),
                WindowLimit("hour", HOUR, settings.ai_global_per_hour),
                WindowLimit("day", DAY, settings.ai_global_per_day),
                WindowLimit("minute", MINUTE, settings.ai_global_tokens_per_minute, "tokens"),
            ),
        )
    ]
    if user_id:
        scopes.append(
            RateLimitScope(
                f"ai:user:{user_id}",
                (
                    WindowLimit("second", SECOND, settings.ai_user_per_second),
                    WindowLimit("minute", MINUTE, settings.ai_user_per_minute),
                    WindowLimit("hour", HOUR, settings.ai_user_per_hour),
                    WindowLimit("day", DAY, settings.ai_user_per_day),
                    WindowLimit("minute", MINUTE, settings.ai_user_tokens_per_minute, "tokens"),
                ),
            )
        )
    return scopes


def broker_scope(broker_type: str) -> RateLimitScope:
    per_minute = {
        "TRADESTATION": settings.tradestation_requests_per_minute,
        "ALPACA": settings.alpaca_requests_per_minute,
    }.get(broker_type, 60)
    return RateLimitScope(
        f"broker:{broker_type}", (WindowLimit("minute", MINUTE, per_minute),)
    )


_limiter: MultiWindowRateLimiter | None = None


def get_rate_limiter() -> MultiWindowRateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = MultiWindowRateLimiter()
    return _limiter
