"""Reconciled earnings table routes."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Path

from earningstable.core.data_helpers import normalize_symbol
from earningstable.core.exceptions import NotFoundError
from earningstable.repositories import reports_orm
from earningstable.schemas.reports import ReportResponse


router = APIRouter()


@router.get(
    "",
    response_model=List[ReportResponse],
    summary="List reconciled reports",
    description="Every reconciled row of the current table, ordered by symbol.",
)
async def list_reports() -> List[ReportResponse]:
    reports = await reports_orm.list_reports()
    return [ReportResponse.model_validate(r, from_attributes=True) for r in reports]


@router.get(
    "/{symbol}",
    response_model=ReportResponse,
    summary="Get one reconciled report",
)
async def get_report(
    symbol: str = Path(..., min_length=1, max_length=20),
) -> ReportResponse:
    """Accepts both the canonical (``BRK.B``) and feed (``BRK-B``) spelling."""
    canonical = normalize_symbol(symbol)
    report = await reports_orm.get_report(canonical)
    if report is None:
        raise NotFoundError(f"No report for {canonical}")
    return ReportResponse.model_validate(report, from_attributes=True)
