"""Caching: in-process TTL caches and the Valkey pipeline lock."""

from .client import (
    close_valkey_client,
    get_valkey_client,
    valkey_healthcheck,
)
from .distributed_lock import (
    DistributedLock,
    pipeline_lock,
)
from .memory import (
    CORPORATE_ACTION_TTL,
    PREVIOUS_CLOSE_TTL,
    REFERENCE_TTL,
    SNAPSHOT_TTL,
    TTLCache,
)


__all__ = [
    "CORPORATE_ACTION_TTL",
    "DistributedLock",
    "PREVIOUS_CLOSE_TTL",
    "REFERENCE_TTL",
    "SNAPSHOT_TTL",
    "TTLCache",
    "close_valkey_client",
    "get_valkey_client",
    "pipeline_lock",
    "valkey_healthcheck",
]
