"""Valkey (Redis-compatible) cache module."""

from .cache import Cache, cache_key, params_fingerprint
from .client import close_valkey_client, get_valkey_client, valkey_healthcheck
from .distributed_lock import DistributedLock
from .rate_limit import (
    MultiWindowRateLimiter,
    RateLimitDecision,
    RateLimitScope,
    WindowLimit,
    ai_scopes,
    broker_scope,
    get_rate_limiter,
)


__all__ = [
    "Cache",
    "DistributedLock",
    "MultiWindowRateLimiter",
    "RateLimitDecision",
    "RateLimitScope",
    "WindowLimit",
    "ai_scopes",
    "broker_scope",
    "cache_key",
    "close_valkey_client",
    "get_rate_limiter",
    "get_valkey_client",
    "params_fingerprint",
    "valkey_healthcheck",
]
