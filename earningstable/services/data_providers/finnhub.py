"""Earnings calendar feed (Finnhub)."""

from __future__ import annotations

from datetime import date
from typing import Any

import httpx

from earningstable.core.config import settings
from earningstable.core.exceptions import ConfigurationError
from earningstable.core.logging import get_logger

from .resilience import RetryableClient


logger = get_logger("finnhub")

UPSTREAM = "finnhub"


class FinnhubClient:
    """Thin client for ``/calendar/earnings``; returns raw rows."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: RetryableClient | None = None,
    ):
        token = token if token is not None else settings.finnhub_token
        if client is None:
            if not token:
                raise ConfigurationError("FINNHUB_TOKEN is not set")
            client = RetryableClient(
                UPSTREAM,
                base_url or settings.finnhub_base_url,
                default_params={"token": token},
                transport=transport,
            )
        self._client = client

    async def __aenter__(self) -> FinnhubClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_earnings(self, from_date: date, to_date: date) -> list[dict[str, Any]]:
        """Earnings calendar rows between two dates (inclusive)."""
        payload = await self._client.get_json(
            "/calendar/earnings",
            {"from": from_date.isoformat(), "to": to_date.isoformat()},
        )
        rows = payload.get("earningsCalendar") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            logger.warning(f"Earnings calendar response had no rows for {from_date}..{to_date}")
            return []
        logger.info(f"Fetched {len(rows)} earnings rows for {from_date}..{to_date}")
        return [row for row in rows if isinstance(row, dict)]
