"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

# Settings are read at import time; configure before the package loads.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FINNHUB_TOKEN", "test-finnhub-token")
os.environ.setdefault("POLYGON_API_KEY", "test-polygon-key")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DISTRIBUTED_LOCK_ENABLED", "false")
os.environ.setdefault("ALLOW_CLEAR", "false")

from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from earningstable.core.exceptions import PermanentUpstreamError
from earningstable.core.market_time import TimeWindow
from earningstable.services.data_providers.polygon import (
    PreviousCloses,
    ReferenceData,
    SnapshotData,
)
from earningstable.services.data_providers.rate_control import AdaptiveBatchLimiter
from earningstable.services.data_providers.resilience import reset_breakers


TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

# Tuesday 2024-05-14 10:30 America/New_York (regular session)
REGULAR_NOW = datetime(2024, 5, 14, 14, 30, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock for TimeWindow."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# =============================================================================
# Fake upstreams
# =============================================================================


class FakeEarningsSource:
    """Stands in for FinnhubClient."""

    def __init__(self, rows: list[dict[str, Any]] | None = None):
        self.rows = rows or []
        self.calls: list[tuple[date, date]] = []
        self.closed = False

    async def __aenter__(self) -> "FakeEarningsSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.closed = True

    async def fetch_earnings(self, from_date: date, to_date: date) -> list[dict[str, Any]]:
        self.calls.append((from_date, to_date))
        return list(self.rows)


def _not_found(symbol: str) -> PermanentUpstreamError:
    return PermanentUpstreamError("polygon", f"HTTP 404 for {symbol}", status=404)


class FakePriceSource:
    """In-memory PriceSource; a stored exception instance is raised instead of returned."""

    def __init__(self):
        self.snapshots: dict[str, SnapshotData | Exception] = {}
        self.references: dict[str, ReferenceData | Exception] = {}
        self.closes: dict[date, PreviousCloses | Exception] = {}
        self.corporate_actions: dict[str, bool] = {}
        self.calls: dict[str, list[Any]] = defaultdict(list)
        self.closed = False

    @staticmethod
    def _answer(value: Any) -> Any:
        if isinstance(value, Exception):
            raise value
        return value

    async def get_snapshot(self, symbol: str) -> SnapshotData:
        self.calls["snapshot"].append(symbol)
        return self._answer(self.snapshots.get(symbol, _not_found(symbol)))

    async def get_reference(self, symbol: str) -> ReferenceData:
        self.calls["reference"].append(symbol)
        return self._answer(self.references.get(symbol, _not_found(symbol)))

    async def get_previous_closes(self, day: date) -> PreviousCloses:
        self.calls["previous_closes"].append(day)
        return self._answer(self.closes.get(day, PreviousCloses(day=day)))

    async def has_corporate_action(self, symbol: str, since: date) -> bool:
        self.calls["corporate_action"].append((symbol, since))
        return self.corporate_actions.get(symbol, False)

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_breakers():
    """Every test starts with closed circuit breakers."""
    reset_breakers()
    yield
    reset_breakers()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory SQLite database with all tables."""
    from earningstable.database.connection import close_database, init_database

    await close_database()
    await init_database(TEST_DB_URL, create_tables=True)
    yield
    await close_database()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(REGULAR_NOW)


@pytest.fixture
def window(clock: FixedClock) -> TimeWindow:
    return TimeWindow(tz="America/New_York", clock=clock)


@pytest.fixture
def earnings_source() -> FakeEarningsSource:
    return FakeEarningsSource()


@pytest.fixture
def price_source() -> FakePriceSource:
    return FakePriceSource()


@pytest.fixture
def deps(window: TimeWindow, earnings_source: FakeEarningsSource, price_source: FakePriceSource):
    from earningstable.jobs.dependencies import JobDependencies

    return JobDependencies(
        window=window,
        earnings_source_factory=lambda: earnings_source,
        price_source_factory=lambda: price_source,
        limiter=AdaptiveBatchLimiter("test", concurrency=4, batch_size=2, max_concurrency=8),
        batch_delay_seconds=0,
    )


@pytest.fixture
def epoch_ns() -> Callable[[datetime], int]:
    """Aware datetime to the nanosecond timestamps the quote feed reports."""
    return lambda instant: int(instant.timestamp()) * 1_000_000_000


@pytest_asyncio.fixture
async def async_client(db) -> AsyncGenerator[AsyncClient, None]:
    """Async test client for the read API (lifespan not run; the db fixture owns the engine)."""
    from earningstable.api.app import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
