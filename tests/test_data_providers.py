"""
Tests for the upstream feed clients (earnings calendar and quotes).
"""

from datetime import date
from decimal import Decimal

import httpx
import pytest

from earningstable.core.exceptions import ConfigurationError, PermanentUpstreamError
from earningstable.domain.quotes import PriceLabel
from earningstable.services.data_providers.finnhub import FinnhubClient
from earningstable.services.data_providers.polygon import (
    PolygonClient,
    PriceSource,
    parse_grouped,
    parse_reference,
    parse_snapshot,
)


SNAPSHOT_PAYLOAD = {
    "status": "OK",
    "ticker": {
        "ticker": "BRK-B",
        "updated": 1715697000000000000,
        "day": {"c": 410.5},
        "lastTrade": {"p": 411.25, "t": 1715697000000000000},
        "min": {"c": 411.0, "t": 1715696940000},
        "prevDay": {"c": 405.0},
        "preMarket": {},
    },
}


class TestParsing:
    """Payload to domain shapes."""

    def test_snapshot_labels(self):
        snapshot = parse_snapshot("BRK.B", SNAPSHOT_PAYLOAD)
        by_label = {o.label: o for o in snapshot.observations}

        assert by_label[PriceLabel.LIVE].price == Decimal("411.25")
        assert by_label[PriceLabel.MINUTE_BAR].timestamp == 1715696940000
        # the day bar falls back to the snapshot's update time
        assert by_label[PriceLabel.DAY_BAR].timestamp == 1715697000000000000
        assert by_label[PriceLabel.PREVIOUS_CLOSE].timestamp is None
        assert PriceLabel.PRE_MARKET not in by_label

    def test_snapshot_without_ticker(self):
        assert parse_snapshot("XYZ", {"status": "OK"}).observations == ()

    def test_reference_prefers_share_class_shares(self):
        reference = parse_reference(
            "AAPL",
            {
                "results": {
                    "name": "Apple Inc.",
                    "market_cap": 2.9e12,
                    "share_class_shares_outstanding": 15_300_000_000,
                    "weighted_shares_outstanding": 15_400_000_000,
                }
            },
        )
        assert reference.name == "Apple Inc."
        assert reference.shares_outstanding == Decimal("15300000000")
        assert reference.market_cap == Decimal("2900000000000.0")

    def test_reference_falls_back_to_weighted_shares(self):
        reference = parse_reference("AAPL", {"results": {"weighted_shares_outstanding": 100}})
        assert reference.shares_outstanding == Decimal(100)
        assert reference.market_cap is None

    def test_grouped_maps_feed_symbols(self):
        closes = parse_grouped(
            {"results": [{"T": "BRK-B", "c": 405.0}, {"T": "AAPL", "c": 189.5}, {"T": "BAD", "c": 0}]}
        )
        assert closes == {"BRK.B": Decimal("405.0"), "AAPL": Decimal("189.5")}


class TestPolygonClient:
    """Requests go out in feed form with the API key."""

    async def test_snapshot_uses_feed_symbol(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=SNAPSHOT_PAYLOAD)

        client = PolygonClient(api_key="k", base_url="https://poly.test", transport=httpx.MockTransport(handler))
        try:
            snapshot = await client.get_snapshot("BRK.B")
        finally:
            await client.aclose()

        assert snapshot.symbol == "BRK.B"
        assert seen[0].url.path == "/v2/snapshot/locale/us/markets/stocks/tickers/BRK-B"
        assert seen[0].url.params["apiKey"] == "k"

    async def test_previous_closes_fetches_adjusted_and_raw(self):
        def handler(request):
            adjusted = request.url.params["adjusted"] == "true"
            close = 100.0 if adjusted else 200.0
            return httpx.Response(200, json={"results": [{"T": "AAPL", "c": close}]})

        client = PolygonClient(api_key="k", base_url="https://poly.test", transport=httpx.MockTransport(handler))
        try:
            closes = await client.get_previous_closes(date(2024, 5, 13))
        finally:
            await client.aclose()

        assert closes.day == date(2024, 5, 13)
        assert closes.adjusted == {"AAPL": Decimal("100.0")}
        assert closes.raw == {"AAPL": Decimal("200.0")}

    async def test_corporate_action_checks_dividends_then_splits(self):
        paths: list[str] = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith("/splits"):
                return httpx.Response(200, json={"results": [{"ticker": "NVDA"}]})
            return httpx.Response(200, json={"results": []})

        client = PolygonClient(api_key="k", base_url="https://poly.test", transport=httpx.MockTransport(handler))
        try:
            found = await client.has_corporate_action("NVDA", date(2024, 5, 1))
        finally:
            await client.aclose()

        assert found is True
        assert paths == ["/v3/reference/dividends", "/v3/reference/splits"]

    async def test_unknown_ticker_is_permanent(self):
        client = PolygonClient(
            api_key="k",
            base_url="https://poly.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(404, json={"status": "NOT_FOUND"})),
        )
        try:
            with pytest.raises(PermanentUpstreamError):
                await client.get_reference("NOPE")
        finally:
            await client.aclose()

    def test_implements_price_source(self):
        client = PolygonClient(api_key="k")
        assert isinstance(client, PriceSource)

    def test_missing_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            PolygonClient(api_key="")


class TestFinnhubClient:
    async def test_fetch_earnings_rows(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={"earningsCalendar": [{"symbol": "AAPL", "date": "2024-05-14"}, "junk"]},
            )

        async with FinnhubClient(
            token="t", base_url="https://finn.test", transport=httpx.MockTransport(handler)
        ) as client:
            rows = await client.fetch_earnings(date(2024, 5, 14), date(2024, 5, 14))

        assert rows == [{"symbol": "AAPL", "date": "2024-05-14"}]
        assert seen[0].url.path == "/calendar/earnings"
        assert seen[0].url.params["from"] == "2024-05-14"
        assert seen[0].url.params["token"] == "t"

    async def test_missing_calendar_is_empty(self):
        async with FinnhubClient(
            token="t",
            base_url="https://finn.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})),
        ) as client:
            assert await client.fetch_earnings(date(2024, 5, 14), date(2024, 5, 14)) == []

    def test_missing_token_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            FinnhubClient(token="")
