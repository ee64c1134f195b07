"""Earnings calendar domain models."""

from __future__ import annotations

from datetime import date as DateType
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AnnouncementTiming(str, Enum):
    """When the company reports relative to the regular session."""

    BEFORE_OPEN = "before_open"
    AFTER_CLOSE = "after_close"
    DURING_MARKET = "during_market"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, label: Any) -> AnnouncementTiming:
        """Map the feed's free-text hour label (``bmo``, ``amc``, ``dmh``, prose)."""
        if label is None:
            return cls.UNKNOWN
        text = str(label).strip().lower()
        if not text:
            return cls.UNKNOWN
        if text == "bmo" or text.startswith("before"):
            return cls.BEFORE_OPEN
        if text == "amc" or text.startswith("after"):
            return cls.AFTER_CLOSE
        if text == "dmh" or text.startswith("during"):
            return cls.DURING_MARKET
        return cls.UNKNOWN


BUSINESS_FIELDS = (
    "timing",
    "eps_actual",
    "eps_estimate",
    "revenue_actual",
    "revenue_estimate",
    "fiscal_quarter",
    "fiscal_year",
)


class EarningsRecordData(BaseModel):
    """One normalized earnings calendar entry, keyed by (report_date, symbol)."""

    symbol: str = Field(..., description="Canonical uppercase ticker")
    report_date: DateType = Field(..., description="Exchange-local report date")
    timing: AnnouncementTiming = AnnouncementTiming.UNKNOWN

    eps_actual: Decimal | None = None
    eps_estimate: Decimal | None = None
    revenue_actual: int | None = None
    revenue_estimate: int | None = None

    fiscal_quarter: int | None = None
    fiscal_year: int | None = None

    model_config = {
        "from_attributes": True,
    }

    @property
    def key(self) -> tuple[DateType, str]:
        return (self.report_date, self.symbol)

    @property
    def completeness(self) -> int:
        """Number of non-null numeric fields (EPS, revenue, fiscal period)."""
        return sum(
            1
            for name in BUSINESS_FIELDS
            if name != "timing" and getattr(self, name) is not None
        )

    def business_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in BUSINESS_FIELDS}
