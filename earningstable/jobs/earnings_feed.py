"""Earnings calendar ingestion: fetch, normalize, dedupe, upsert, seed quote universe."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from typing import Any

from earningstable.core.data_helpers import normalize_symbol, safe_date, safe_decimal, safe_int
from earningstable.core.logging import get_logger
from earningstable.domain.earnings import AnnouncementTiming, EarningsRecordData
from earningstable.domain.pipeline import JobResult, RunContext
from earningstable.repositories import earnings_orm, quotes_orm

from .dependencies import JobDependencies


logger = get_logger("jobs.earnings_feed")


def normalize_row(row: dict[str, Any], fallback_date: date) -> EarningsRecordData | None:
    """One raw feed row to a typed record; None when the symbol is empty."""
    symbol = normalize_symbol(row.get("symbol"))
    if not symbol:
        return None
    return EarningsRecordData(
        symbol=symbol,
        report_date=safe_date(row.get("date")) or fallback_date,
        timing=AnnouncementTiming.from_label(row.get("hour")),
        eps_actual=safe_decimal(row.get("epsActual")),
        eps_estimate=safe_decimal(row.get("epsEstimate")),
        revenue_actual=safe_int(row.get("revenueActual")),
        revenue_estimate=safe_int(row.get("revenueEstimate")),
        fiscal_quarter=safe_int(row.get("quarter")),
        fiscal_year=safe_int(row.get("year")),
    )


def deduplicate(records: Iterable[EarningsRecordData]) -> list[EarningsRecordData]:
    """Collapse duplicates per (report_date, symbol), keeping the most complete.

    Ties keep the first record seen; output keeps first-seen key order.
    """
    unique: dict[tuple[date, str], EarningsRecordData] = {}
    for record in records:
        current = unique.get(record.key)
        if current is None or record.completeness > current.completeness:
            unique[record.key] = record
    return list(unique.values())


class EarningsFeedJob:
    """Fetch today's earnings calendar and persist it change-aware."""

    name = "earnings_feed"

    def __init__(self, deps: JobDependencies):
        self.deps = deps

    async def run(self, ctx: RunContext) -> JobResult:
        day = ctx.target_date or self.deps.window.trading_day()
        logger.info(f"Fetching earnings calendar for {day}")

        async with self.deps.earnings_source_factory() as source:
            raw_rows = await source.fetch_earnings(day, day)

        normalized = [normalize_row(row, day) for row in raw_rows]
        dropped = sum(1 for r in normalized if r is None)
        if dropped:
            logger.warning(f"Dropped {dropped} earnings rows without a symbol")

        records = deduplicate(r for r in normalized if r is not None)
        duplicates = len(normalized) - dropped - len(records)
        if duplicates:
            logger.info(f"Collapsed {duplicates} duplicate earnings rows")

        stats = await earnings_orm.upsert_earnings(records, force=ctx.force)
        seeded = await quotes_orm.seed_symbols(r.symbol for r in records)

        message = (
            f"{len(records)} records: {stats.inserted} inserted, {stats.updated} updated, "
            f"{stats.unchanged} unchanged; {len(seeded)} symbols seeded"
        )
        logger.info(f"Earnings feed {day}: {message}")
        return JobResult(
            records_processed=len(records),
            written=stats.written,
            unchanged=stats.unchanged,
            changed_symbols=stats.changed_keys,
            message=message,
        )
