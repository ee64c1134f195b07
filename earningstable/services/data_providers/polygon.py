"""
Market quote feed (Polygon) behind the ``PriceSource`` protocol.

Symbols cross this boundary in canonical dotted form (``BRK.B``); the feed
uses the hyphenated form (``BRK-B``) on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import httpx

from earningstable.core.config import settings
from earningstable.core.data_helpers import (
    from_feed_symbol,
    safe_decimal,
    safe_int,
    to_feed_symbol,
)
from earningstable.core.exceptions import ConfigurationError
from earningstable.core.logging import get_logger
from earningstable.domain.quotes import PriceLabel, PriceObservation

from .resilience import RetryableClient


logger = get_logger("polygon")

UPSTREAM = "polygon"


# =============================================================================
# Data shapes
# =============================================================================


@dataclass(frozen=True)
class SnapshotData:
    symbol: str
    observations: tuple[PriceObservation, ...] = ()


@dataclass(frozen=True)
class ReferenceData:
    symbol: str
    name: str | None = None
    market_cap: Decimal | None = None
    shares_outstanding: Decimal | None = None


@dataclass(frozen=True)
class PreviousCloses:
    """Grouped daily closes for one trading day, keyed by canonical symbol."""

    day: date
    adjusted: dict[str, Decimal] = field(default_factory=dict)
    raw: dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.adjusted and not self.raw


@runtime_checkable
class PriceSource(Protocol):
    """Anything that can supply quotes for the quote ingestion job."""

    async def get_snapshot(self, symbol: str) -> SnapshotData: ...

    async def get_reference(self, symbol: str) -> ReferenceData: ...

    async def get_previous_closes(self, day: date) -> PreviousCloses: ...

    async def has_corporate_action(self, symbol: str, since: date) -> bool: ...

    async def aclose(self) -> None: ...


# =============================================================================
# Parsing
# =============================================================================


def parse_snapshot(symbol: str, payload: Any) -> SnapshotData:
    """Map a ``/v2/snapshot`` ticker payload to labelled observations."""
    ticker = payload.get("ticker") if isinstance(payload, dict) else None
    if not isinstance(ticker, dict):
        return SnapshotData(symbol=symbol)

    def section(key: str) -> dict[str, Any]:
        value = ticker.get(key)
        return value if isinstance(value, dict) else {}

    observations: list[PriceObservation] = []

    def add(label: PriceLabel, price: Any, timestamp: Any) -> None:
        value = safe_decimal(price)
        if value is not None:
            observations.append(PriceObservation(label=label, price=value, timestamp=timestamp))

    pre = section("preMarket")
    add(PriceLabel.PRE_MARKET, pre.get("price"), pre.get("timestamp"))
    last_trade = section("lastTrade")
    add(PriceLabel.LIVE, last_trade.get("p"), last_trade.get("t"))
    after = section("afterHours")
    add(PriceLabel.AFTER_HOURS, after.get("price"), after.get("timestamp"))
    minute = section("min")
    add(PriceLabel.MINUTE_BAR, minute.get("c"), minute.get("t"))
    day = section("day")
    add(PriceLabel.DAY_BAR, day.get("c"), day.get("t") or ticker.get("updated"))
    prev_day = section("prevDay")
    add(PriceLabel.PREVIOUS_CLOSE, prev_day.get("c"), None)

    return SnapshotData(symbol=symbol, observations=tuple(observations))


def parse_reference(symbol: str, payload: Any) -> ReferenceData:
    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, dict):
        return ReferenceData(symbol=symbol)
    shares = safe_decimal(results.get("share_class_shares_outstanding")) or safe_decimal(
        results.get("weighted_shares_outstanding")
    )
    return ReferenceData(
        symbol=symbol,
        name=(results.get("name") or None),
        market_cap=safe_decimal(results.get("market_cap")),
        shares_outstanding=shares,
    )


def parse_grouped(payload: Any) -> dict[str, Decimal]:
    results = payload.get("results") if isinstance(payload, dict) else None
    closes: dict[str, Decimal] = {}
    for row in results or []:
        if not isinstance(row, dict) or not row.get("T"):
            continue
        close = safe_decimal(row.get("c"))
        if close is not None and close > 0:
            closes[from_feed_symbol(str(row["T"]).upper())] = close
    return closes


# =============================================================================
# Client
# =============================================================================


class PolygonClient:
    """``PriceSource`` implementation over the Polygon REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: RetryableClient | None = None,
    ):
        api_key = api_key if api_key is not None else settings.polygon_api_key
        if client is None:
            if not api_key:
                raise ConfigurationError("POLYGON_API_KEY is not set")
            client = RetryableClient(
                UPSTREAM,
                base_url or settings.polygon_base_url,
                default_params={"apiKey": api_key},
                transport=transport,
            )
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_snapshot(self, symbol: str) -> SnapshotData:
        payload = await self._client.get_json(
            f"/v2/snapshot/locale/us/markets/stocks/tickers/{to_feed_symbol(symbol)}"
        )
        return parse_snapshot(symbol, payload)

    async def get_reference(self, symbol: str) -> ReferenceData:
        payload = await self._client.get_json(f"/v3/reference/tickers/{to_feed_symbol(symbol)}")
        return parse_reference(symbol, payload)

    async def get_previous_closes(self, day: date) -> PreviousCloses:
        """Grouped closes for ``day``, both split-adjusted and raw."""
        path = f"/v2/aggs/grouped/locale/us/market/stocks/{day.isoformat()}"
        adjusted = parse_grouped(await self._client.get_json(path, {"adjusted": "true"}))
        raw = parse_grouped(await self._client.get_json(path, {"adjusted": "false"}))
        logger.info(f"Grouped closes for {day}: {len(adjusted)} adjusted, {len(raw)} raw")
        return PreviousCloses(day=day, adjusted=adjusted, raw=raw)

    async def has_corporate_action(self, symbol: str, since: date) -> bool:
        """Any dividend ex-date or split execution on or after ``since``."""
        feed_symbol = to_feed_symbol(symbol)
        dividends = await self._client.get_json(
            "/v3/reference/dividends",
            {"ticker": feed_symbol, "ex_dividend_date.gte": since.isoformat(), "limit": 10},
        )
        if _has_results(dividends):
            return True
        splits = await self._client.get_json(
            "/v3/reference/splits",
            {"ticker": feed_symbol, "execution_date.gte": since.isoformat(), "limit": 10},
        )
        return _has_results(splits)


def _has_results(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    results = payload.get("results")
    if isinstance(results, list):
        return len(results) > 0
    return (safe_int(payload.get("count")) or 0) > 0
