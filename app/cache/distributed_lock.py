"""Distributed locking using Valkey."""

from __future__ import annotations

import asyncio
import time
import uuid

from app.core.logging import get_logger

from .client import get_valkey_client


logger = get_logger("cache.lock")

LOCK_PREFIX = "tradejournal:lock"

# Compare-and-delete so a lock that expired and was re-acquired elsewhere
# is never released by its former holder.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DistributedLock:
    """
    SET NX lock with an owner token and automatic expiry.

    Args:
        name: Lock name (prefixed with ``tradejournal:lock``)
        timeout: Expiry in seconds, releases the lock if the holder dies
        blocking: Wait for the lock instead of returning immediately
        blocking_timeout: Max seconds to wait when blocking (None = forever)
    """

    def __init__(
        self,
        name: str,
        timeout: int = 30,
        blocking: bool = True,
        blocking_timeout: float | None = None,
    ):
        self.name = name
        self.key = f"{LOCK_PREFIX}:{name}"
        self.timeout = timeout
        self.blocking = blocking
        self.blocking_timeout = blocking_timeout
        self.token = str(uuid.uuid4())
        self._acquired = False

    async def acquire(self) -> bool:
        client = await get_valkey_client()
        start_time = time.monotonic()

        while True:
            if await client.set(self.key, self.token, ex=self.timeout, nx=True):
                self._acquired = True
                logger.debug(f"Lock acquired: {self.name}")
                return True

            if not self.blocking:
                return False
            if (
                self.blocking_timeout is not None
                and time.monotonic() - start_time >= self.blocking_timeout
            ):
                logger.debug(f"Lock acquisition timeout: {self.name}")
                return False
            await asyncio.sleep(0.1)

    async def release(self) -> bool:
        if not self._acquired:
            return False

        self._acquired = False
        try:
            client = await get_valkey_client()
            result = await client.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        except Exception as e:
            logger.error(f"Lock release error: {e}", extra={"lock": self.name})
            return False

        if not result:
            logger.warning(f"Lock expired before release: {self.name}")
            return False
        return True

    async def __aenter__(self) -> DistributedLock:
        if not await self.acquire():
            raise RuntimeError(f"Failed to acquire lock: {self.name}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()
