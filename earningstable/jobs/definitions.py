"""Built-in job definitions.

Jobs:
- earnings_feed: Earnings calendar for the trading day
- quote_feed: Quotes for the whole quote universe
- report_builder: Reconciled table from both feed tables
- pipeline: earnings_feed -> quote_feed -> report_builder (interval trigger)
- daily_reset: Clear the three data tables (daily trigger, needs allow_clear)
"""

from __future__ import annotations

import time

from earningstable.core.config import settings
from earningstable.core.exceptions import JobError
from earningstable.core.logging import get_logger
from earningstable.domain.pipeline import JobResult, RunContext
from earningstable.repositories import earnings_orm, quotes_orm, reports_orm

from .dependencies import JobDependencies
from .earnings_feed import EarningsFeedJob
from .quote_feed import QuoteFeedJob
from .registry import register_job
from .report_builder import ReportBuilder


logger = get_logger("jobs.definitions")

PIPELINE_JOB = "pipeline"
DAILY_RESET_JOB = "daily_reset"


@register_job("earnings_feed")
async def earnings_feed_job(ctx: RunContext, deps: JobDependencies) -> JobResult:
    return await EarningsFeedJob(deps).run(ctx)


@register_job("quote_feed")
async def quote_feed_job(ctx: RunContext, deps: JobDependencies) -> JobResult:
    return await QuoteFeedJob(deps).run(ctx)


@register_job("report_builder")
async def report_builder_job(ctx: RunContext, deps: JobDependencies) -> JobResult:
    return await ReportBuilder(deps).run(ctx)


# =============================================================================
# PIPELINE - earnings -> quotes -> report (interval trigger)
# =============================================================================


@register_job(PIPELINE_JOB)
async def pipeline_job(ctx: RunContext, deps: JobDependencies) -> JobResult:
    """
    Run the three ingestion steps in order.

    A failing step stops the sequence; steps already finished keep their
    committed rows.
    """
    steps = (
        ("earnings", EarningsFeedJob(deps)),
        ("quotes", QuoteFeedJob(deps)),
        ("report", ReportBuilder(deps)),
    )
    total = JobResult()
    timings: list[str] = []
    started = time.monotonic()

    for label, step in steps:
        step_started = time.monotonic()
        result = await step.run(ctx)
        timings.append(f"{label}={int((time.monotonic() - step_started) * 1000)}ms")
        total = total.merge(result)

    timings.append(f"total={int((time.monotonic() - started) * 1000)}ms")
    logger.info(f"[timing] {' '.join(timings)}")
    return total


# =============================================================================
# DAILY RESET - clear ingested tables (03:00 exchange-local)
# =============================================================================


@register_job(DAILY_RESET_JOB)
async def daily_reset_job(ctx: RunContext, deps: JobDependencies) -> JobResult:
    """Delete every earnings, quote and report row. Refused unless clearing is allowed."""
    if not (ctx.allow_clear or settings.allow_clear):
        logger.warning("Daily reset refused: ALLOW_CLEAR is not enabled")
        raise JobError("daily reset refused: allow_clear is false")

    reports = await reports_orm.clear_reports()
    quotes = await quotes_orm.clear_observations()
    earnings = await earnings_orm.clear_earnings()
    deps.caches.clear()

    message = f"cleared {earnings} earnings, {quotes} quotes, {reports} reports"
    logger.info(f"Daily reset: {message}")
    return JobResult(records_processed=earnings + quotes + reports, message=message)
