"""Data providers - upstream feed access with retries and circuit breakers."""

from .finnhub import FinnhubClient
from .polygon import (
    PolygonClient,
    PreviousCloses,
    PriceSource,
    ReferenceData,
    SnapshotData,
)
from .rate_control import AdaptiveBatchLimiter
from .resilience import (
    CircuitBreaker,
    CircuitState,
    RetryableClient,
    RetryPolicy,
    get_breaker,
)


__all__ = [
    "AdaptiveBatchLimiter",
    "CircuitBreaker",
    "CircuitState",
    "FinnhubClient",
    "PolygonClient",
    "PreviousCloses",
    "PriceSource",
    "ReferenceData",
    "RetryPolicy",
    "RetryableClient",
    "SnapshotData",
    "get_breaker",
]
