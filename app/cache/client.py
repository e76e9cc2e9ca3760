"""Valkey client connection management."""

from __future__ import annotations

import asyncio

from redis.asyncio import ConnectionPool, Redis

from app.core.config import settings
from app.core.logging import get_logger


logger = get_logger("cache.client")

# Pools are bound to the loop that created them (Celery workers run their own).
_pools: dict[int, ConnectionPool] = {}
_clients: dict[int, Redis] = {}


def _get_loop_id() -> int:
    try:
        return id(asyncio.get_running_loop())
    except RuntimeError:
        return 0


async def init_valkey_pool() -> ConnectionPool:
    """Initialize the Valkey connection pool for the current event loop."""
    loop_id = _get_loop_id()
    if loop_id not in _pools:
        _pools[loop_id] = ConnectionPool.from_url(
            settings.valkey_url,
            max_connections=settings.valkey_max_connections,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        logger.info("Valkey connection pool initialized", extra={"loop_id": loop_id})
    return _pools[loop_id]


async def get_valkey_client() -> Redis:
    """Valkey client for the current event loop."""
    loop_id = _get_loop_id()
    if loop_id not in _clients:
        pool = await init_valkey_pool()
        _clients[loop_id] = Redis(connection_pool=pool)
    return _clients[loop_id]


async def close_valkey_client() -> None:
    """Close the client and pool of the current event loop."""
    loop_id = _get_loop_id()
    client = _clients.pop(loop_id, None)
    if client is not None:
        await client.aclose()
    pool = _pools.pop(loop_id, None)
    if pool is not None:
        await pool.disconnect()
    logger.info("Valkey connection pool closed", extra={"loop_id": loop_id})


async def valkey_healthcheck() -> bool:
    try:
        client = await get_valkey_client()
        result = await asyncio.wait_for(client.ping(), timeout=5.0)
        return result is True or result == "PONG"
    except Exception as e:
        logger.warning(f"Valkey healthcheck failed: {e}")
        return False
