"""Cross-process pipeline lock using Valkey (SET NX EX + token-checked release)."""

from __future__ import annotations

import uuid

import redis.asyncio as redis
from redis.asyncio import Redis

from earningstable.core.config import settings
from earningstable.core.logging import get_logger

from .client import get_valkey_client


logger = get_logger("cache.lock")

LOCK_PREFIX = "earningstable:lock"
PIPELINE_LOCK_NAME = "pipeline"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class DistributedLock:
    """
    Non-blocking lock shared by every process that runs the pipeline.

    The key expires after ``ttl`` seconds so a crashed holder never wedges
    the schedule; a live holder keeps it with ``extend``. Release and extend
    touch the key only while our token still owns it.
    """

    def __init__(self, name: str, ttl: int | None = None, client: Redis | None = None):
        """
        Args:
            name: Lock name (will be prefixed)
            ttl: Expiry in seconds (defaults to ``distributed_lock_ttl``)
            client: Valkey client; the per-loop shared client when omitted
        """
        self.name = name
        self.key = f"{LOCK_PREFIX}:{name}"
        self.ttl = ttl or settings.distributed_lock_ttl
        self.token = str(uuid.uuid4())
        self._client = client
        self._acquired = False

    async def _get_client(self) -> Redis:
        if self._client is None:
            self._client = await get_valkey_client()
        return self._client

    @property
    def acquired(self) -> bool:
        return self._acquired

    async def acquire(self) -> bool:
        """Try once; True when this instance now holds the lock."""
        client = await self._get_client()
        acquired = await client.set(self.key, self.token, ex=self.ttl, nx=True)
        self._acquired = bool(acquired)
        if self._acquired:
            logger.debug(f"Lock acquired: {self.name} (ttl {self.ttl}s)")
        else:
            logger.info(f"Lock held elsewhere: {self.name}")
        return self._acquired

    async def release(self) -> bool:
        """Release if we still hold it (token matches)."""
        if not self._acquired:
            return False

        client = await self._get_client()
        self._acquired = False
        try:
            result = await client.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        except redis.RedisError as e:
            logger.error(f"Lock release error for {self.name}: {e}")
            return False

        if result:
            logger.debug(f"Lock released: {self.name}")
            return True
        logger.warning(f"Lock release skipped (expired or token mismatch): {self.name}")
        return False

    async def extend(self, ttl: int | None = None) -> bool:
        """Reset the expiry to ``ttl`` seconds if we still hold the lock."""
        if not self._acquired:
            return False

        client = await self._get_client()
        new_ttl = ttl or self.ttl
        try:
            result = await client.eval(_EXTEND_SCRIPT, 1, self.key, self.token, new_ttl)
        except redis.RedisError as e:
            logger.error(f"Lock extend error for {self.name}: {e}")
            return False

        if result:
            logger.debug(f"Lock extended: {self.name} ({new_ttl}s)")
            return True
        logger.warning(f"Lock extend skipped (expired or token mismatch): {self.name}")
        return False


def pipeline_lock(client: Redis | None = None) -> DistributedLock:
    """The one lock every job takes; they all write the same tables."""
    return DistributedLock(PIPELINE_LOCK_NAME, client=client)
