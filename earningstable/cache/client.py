"""Valkey client connection management (pipeline lock backend)."""

from __future__ import annotations

import asyncio

import redis.asyncio as redis
from redis.asyncio import ConnectionPool, Redis

from earningstable.core.config import settings
from earningstable.core.logging import get_logger


logger = get_logger("cache.client")

# One pool/client per event loop
_pools: dict[int, ConnectionPool] = {}
_clients: dict[int, Redis] = {}


def _get_loop_id() -> int:
    """Get current event loop id for tracking client per loop."""
    try:
        loop = asyncio.get_running_loop()
        return id(loop)
    except RuntimeError:
        return 0


async def get_valkey_client() -> Redis:
    """Get Valkey client instance for current event loop."""
    loop_id = _get_loop_id()
    if loop_id not in _clients:
        if loop_id not in _pools:
            _pools[loop_id] = ConnectionPool.from_url(
                settings.valkey_url,
                max_connections=settings.valkey_max_connections,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
                retry_on_timeout=True,
            )
            logger.info(f"Valkey connection pool initialized (loop {loop_id})")
        _clients[loop_id] = Redis(connection_pool=_pools[loop_id])
    return _clients[loop_id]


async def close_valkey_client() -> None:
    """Close Valkey client and connection pool for current event loop."""
    loop_id = _get_loop_id()
    client = _clients.pop(loop_id, None)
    if client is not None:
        await client.aclose()
    pool = _pools.pop(loop_id, None)
    if pool is not None:
        await pool.disconnect()
        logger.info(f"Valkey connection pool closed (loop {loop_id})")


async def valkey_healthcheck() -> bool:
    """Check Valkey connection health."""
    try:
        client = await get_valkey_client()
        result = await asyncio.wait_for(client.ping(), timeout=5.0)
        return result is True or result == "PONG"
    except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(f"Valkey healthcheck failed: {e}")
        return False
