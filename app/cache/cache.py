"""JSON cache over Valkey with namespaced keys.

Cache failures are never fatal: reads degrade to a miss and writes report
``False`` so callers recompute instead of failing.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Awaitable, Callable, Optional, Union

from app.core.config import settings
from app.core.logging import get_logger

from .client import get_valkey_client


logger = get_logger("cache")

CACHE_PREFIX = "tradejournal"
CACHE_VERSION = "v1"


def cache_key(*parts: Union[str, int, float], prefix: str = "cache") -> str:
    """
    Build a namespaced key.

    cache_key("macro", "NQ1", "2026-01-20", prefix="daily_bias")
        -> "tradejournal:v1:daily_bias:macro:NQ1:2026-01-20"
    """
    sanitized = [str(part).replace(":", "_") for part in parts]
    return f"{CACHE_PREFIX}:{CACHE_VERSION}:{prefix}:{':'.join(sanitized)}"


def params_fingerprint(params: dict[str, Any]) -> str:
    """Stable SHA-256 of normalized params (sorted keys, compact JSON)."""
    normalized = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()


class Cache:
    """Typed cache wrapper for one key namespace."""

    def __init__(self, prefix: str = "cache", default_ttl: Optional[int] = None):
        self.prefix = prefix
        self.default_ttl = default_ttl or settings.cache_default_ttl

    def full_key(self, key: str) -> str:
        return cache_key(key, prefix=self.prefix)

    async def get(self, key: str) -> Optional[Any]:
        full_key = self.full_key(key)
        try:
            client = await get_valkey_client()
            value = await client.get(full_key)
        except Exception as e:
            logger.warning(f"Cache get failed: {e}", extra={"key": full_key})
            return None
        if value is None:
            logger.debug(f"Cache miss: {full_key}")
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry", extra={"key": full_key})
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        full_key = self.full_key(key)
        try:
            client = await get_valkey_client()
            await client.set(full_key, json.dumps(value, default=str), ex=ttl or self.default_ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed: {e}", extra={"key": full_key})
            return False

    async def delete(self, key: str) -> bool:
        full_key = self.full_key(key)
        try:
            client = await get_valkey_client()
            await client.delete(full_key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed: {e}", extra={"key": full_key})
            return False

    async def get_or_set_with_lock(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        lock_timeout: int = 10,
    ) -> Any:
        """
        Get from cache or compute with stampede protection.

        Only the lock holder runs ``factory``; concurrent callers wait for the
        lock and then read what it cached. A ``None`` result is returned but
        never cached. Without Valkey the value is computed directly.
        """
        value = await self.get(key)
        if value is not None:
            return value

        from .distributed_lock import DistributedLock

        lock = DistributedLock(
            f"{self.full_key(key)}:lock",
            timeout=lock_timeout,
            blocking=True,
            blocking_timeout=lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except Exception as e:
            logger.warning(f"Cache lock unavailable, computing without it: {e}", extra={"key": key})
            return await factory()

        if not acquired:
            # Holder is still computing or died; don't wait twice
            value = await self.get(key)
            if value is not None:
                return value
            return await factory()

        try:
            value = await self.get(key)
            if value is not None:
                return value
            value = await factory()
            if value is not None:
                await self.set(key, value, ttl)
            return value
        finally:
            await lock.release()
