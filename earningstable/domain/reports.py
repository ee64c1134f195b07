"""Reconciled report domain model."""

from __future__ import annotations

from datetime import date as DateType
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


REPORT_BUSINESS_FIELDS = (
    "name",
    "size",
    "market_cap",
    "market_cap_diff",
    "price",
    "change_pct",
    "eps_actual",
    "eps_estimate",
    "eps_surprise_pct",
    "revenue_actual",
    "revenue_estimate",
    "revenue_surprise_pct",
    "report_date",
)


class ReconciledReportData(BaseModel):
    """One row of the reconciled earnings table.

    Logo fields belong to the enrichment collaborator and are never part of
    the business comparison.
    """

    symbol: str = Field(..., description="Canonical uppercase ticker")
    name: str | None = None
    size: str | None = None

    market_cap: int | None = None
    market_cap_diff: int | None = None
    price: Decimal | None = None
    change_pct: Decimal | None = None

    eps_actual: Decimal | None = None
    eps_estimate: Decimal | None = None
    eps_surprise_pct: Decimal | None = None
    revenue_actual: int | None = None
    revenue_estimate: int | None = None
    revenue_surprise_pct: Decimal | None = None

    logo_url: str | None = None
    logo_source: str | None = None
    logo_fetched_at: datetime | None = None

    report_date: DateType
    snapshot_at: datetime

    model_config = {
        "from_attributes": True,
    }

    def business_values(self) -> dict:
        return {name: getattr(self, name) for name in REPORT_BUSINESS_FIELDS}
