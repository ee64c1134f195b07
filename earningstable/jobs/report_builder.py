"""Reconciled report: intersect both feed tables and upsert one row per symbol."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from earningstable.core.data_helpers import round_decimal
from earningstable.core.logging import get_logger
from earningstable.domain.earnings import EarningsRecordData
from earningstable.domain.pipeline import JobResult, RunContext
from earningstable.domain.quotes import QuoteObservationData
from earningstable.domain.reports import ReconciledReportData
from earningstable.repositories import earnings_orm, quotes_orm, reports_orm

from .dependencies import JobDependencies


logger = get_logger("jobs.report_builder")

MIN_ESTIMATE = Decimal("0.0001")


def surprise_pct(
    actual: Decimal | int | None, estimate: Decimal | int | None
) -> Decimal | None:
    """``(actual - estimate) / |estimate| * 100`` rounded to 2 dp; None near zero."""
    if actual is None or estimate is None:
        return None
    actual = Decimal(actual)
    estimate = Decimal(estimate)
    if not actual.is_finite() or not estimate.is_finite():
        return None
    if abs(estimate) <= MIN_ESTIMATE:
        return None
    return round_decimal((actual - estimate) / abs(estimate) * 100)


def build_report(
    earnings: EarningsRecordData,
    quote: QuoteObservationData,
    report_date: date,
    snapshot_at: datetime,
) -> ReconciledReportData:
    return ReconciledReportData(
        symbol=earnings.symbol,
        name=quote.name,
        size=quote.size.value if quote.size else None,
        market_cap=quote.market_cap,
        market_cap_diff=quote.market_cap_diff,
        price=round_decimal(quote.price),
        change_pct=round_decimal(quote.change_pct),
        eps_actual=round_decimal(earnings.eps_actual),
        eps_estimate=round_decimal(earnings.eps_estimate),
        eps_surprise_pct=surprise_pct(earnings.eps_actual, earnings.eps_estimate),
        revenue_actual=earnings.revenue_actual,
        revenue_estimate=earnings.revenue_estimate,
        revenue_surprise_pct=surprise_pct(earnings.revenue_actual, earnings.revenue_estimate),
        report_date=report_date,
        snapshot_at=snapshot_at,
    )


class ReportBuilder:
    """Rebuild the reconciled table for the trading day."""

    name = "report_builder"

    def __init__(self, deps: JobDependencies):
        self.deps = deps

    async def run(self, ctx: RunContext) -> JobResult:
        window = self.deps.window
        day = ctx.target_date or window.trading_day()
        snapshot_at = window.midnight(day)

        # one read per table for the whole cycle
        earnings = {r.symbol: r for r in await earnings_orm.list_earnings_for_date(day)}
        quotes = {q.symbol: q for q in await quotes_orm.list_ready_observations()}

        symbols = sorted(earnings.keys() & quotes.keys())
        missing = len(earnings) - len(symbols)
        if missing:
            logger.info(f"{missing} earnings symbols have no ready quote this cycle")

        reports = [build_report(earnings[s], quotes[s], day, snapshot_at) for s in symbols]
        stats = await reports_orm.upsert_reports(reports, force=ctx.force)
        pruned = await reports_orm.delete_reports_before(day)

        message = (
            f"{len(reports)} reports for {day}: {stats.inserted} inserted, "
            f"{stats.updated} updated, {stats.unchanged} unchanged"
            + (f", {pruned} stale removed" if pruned else "")
        )
        logger.info(f"Report builder: {message}")
        return JobResult(
            records_processed=len(reports),
            written=stats.written,
            unchanged=stats.unchanged,
            changed_symbols=stats.changed_keys,
            message=message,
        )
