"""Reconciled report response schema."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_serializer


class ReportResponse(BaseModel):
    """One reconciled row.

    Market cap, its delta and revenue figures exceed the safe integer range
    of JSON consumers, so they are serialized as strings.
    """

    symbol: str = Field(..., description="Canonical ticker", examples=["BRK.B"])
    name: Optional[str] = None
    size: Optional[str] = Field(None, description="Mega, Large, Mid or Small")
    market_cap: Optional[int] = None
    market_cap_diff: Optional[int] = None
    price: Optional[Decimal] = None
    change_pct: Optional[Decimal] = None
    eps_actual: Optional[Decimal] = None
    eps_estimate: Optional[Decimal] = None
    eps_surprise_pct: Optional[Decimal] = None
    revenue_actual: Optional[int] = None
    revenue_estimate: Optional[int] = None
    revenue_surprise_pct: Optional[Decimal] = None
    logo_url: Optional[str] = None
    report_date: date
    snapshot_at: datetime

    model_config = {"from_attributes": True}

    @field_serializer("market_cap", "market_cap_diff", "revenue_actual", "revenue_estimate")
    def serialize_big_int(self, value: Optional[int]) -> Optional[str]:
        return str(value) if value is not None else None

    @field_serializer(
        "price",
        "change_pct",
        "eps_actual",
        "eps_estimate",
        "eps_surprise_pct",
        "revenue_surprise_pct",
    )
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[float]:
        return float(value) if value is not None else None
