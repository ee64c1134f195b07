"""Collaborators shared by every job run (clients, clock, caches)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from earningstable.cache.memory import (
    CORPORATE_ACTION_TTL,
    PREVIOUS_CLOSE_TTL,
    REFERENCE_TTL,
    SNAPSHOT_TTL,
    TTLCache,
)
from earningstable.core.market_time import TimeWindow
from earningstable.services.data_providers.finnhub import FinnhubClient
from earningstable.services.data_providers.polygon import (
    PolygonClient,
    PreviousCloses,
    PriceSource,
    ReferenceData,
    SnapshotData,
)
from earningstable.services.data_providers.rate_control import AdaptiveBatchLimiter
from earningstable.services.quote_resolver import QuoteResolver


@dataclass
class QuoteCaches:
    """Read-through caches for the quote ingestion path, one TTL each."""

    snapshots: TTLCache[SnapshotData] = field(
        default_factory=lambda: TTLCache("snapshots", SNAPSHOT_TTL)
    )
    references: TTLCache[ReferenceData] = field(
        default_factory=lambda: TTLCache("references", REFERENCE_TTL)
    )
    previous_closes: TTLCache[PreviousCloses] = field(
        default_factory=lambda: TTLCache("previous_closes", PREVIOUS_CLOSE_TTL)
    )
    corporate_actions: TTLCache[bool] = field(
        default_factory=lambda: TTLCache("corporate_actions", CORPORATE_ACTION_TTL)
    )

    def clear(self) -> None:
        for cache in (self.snapshots, self.references, self.previous_closes, self.corporate_actions):
            cache.clear()


@dataclass
class JobDependencies:
    """Everything a job needs besides the database."""

    window: TimeWindow = field(default_factory=TimeWindow)
    earnings_source_factory: Callable[[], FinnhubClient] = FinnhubClient
    price_source_factory: Callable[[], PriceSource] = PolygonClient
    resolver: QuoteResolver | None = None
    caches: QuoteCaches = field(default_factory=QuoteCaches)
    limiter: AdaptiveBatchLimiter = field(default_factory=AdaptiveBatchLimiter.from_settings)
    batch_delay_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.resolver is None:
            self.resolver = QuoteResolver(window=self.window)
