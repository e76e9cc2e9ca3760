"""In-process token bucket for market data calls."""

from __future__ import annotations

import asyncio
import time

from app.core.logging import get_logger


logger = get_logger("core.rate_limiter")


class TokenBucket:
    """
    Token bucket shared by all coroutines of one process.

    Used to pace calls to market data sources that throttle aggressively
    (Yahoo Finance) and carry no per-user quota of their own.
    """

    def __init__(self, name: str, calls_per_second: float = 2.0, burst_size: int = 5):
        self.name = name
        self.calls_per_second = calls_per_second
        self.burst_size = burst_size
        self.tokens = float(burst_size)
        self.last_update = time.monotonic()
        self._lock: asyncio.Lock | None = None

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_update
        self.tokens = min(self.burst_size, self.tokens + elapsed * self.calls_per_second)
        self.last_update = now

    async def acquire(self, timeout: float = 30.0) -> bool:
        """Wait for a token; False if none became available within ``timeout``."""
        if self._lock is None:
            self._lock = asyncio.Lock()

        start = time.monotonic()
        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return True
                wait_time = (1.0 - self.tokens) / self.calls_per_second

            if time.monotonic() - start + wait_time > timeout:
                logger.warning(f"Token bucket {self.name} timeout after {timeout}s")
                return False
            await asyncio.sleep(min(wait_time, 0.5))

    def status(self) -> dict:
        self._refill()
        return {
            "name": self.name,
            "tokens_available": round(self.tokens, 2),
            "burst_size": self.burst_size,
            "calls_per_second": self.calls_per_second,
        }


_buckets: dict[str, TokenBucket] = {}


def get_token_bucket(name: str, calls_per_second: float = 2.0, burst_size: int = 5) -> TokenBucket:
    """Get or create a named bucket (rates only apply on creation)."""
    if name not in _buckets:
        _buckets[name] = TokenBucket(name, calls_per_second, burst_size)
    return _buckets[name]


def get_market_data_bucket() -> TokenBucket:
    return get_token_bucket("market_data", calls_per_second=2.0, burst_size=5)
