"""Reconciled report repository using SQLAlchemy ORM.

ReportBuilder owns every column except the logo fields, which the logo
enrichment collaborator writes through ``update_report_logo``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import delete, func, or_, select

from earningstable.core.config import settings
from earningstable.core.data_helpers import chunked
from earningstable.core.logging import get_logger
from earningstable.database.connection import get_session
from earningstable.database.orm import ReconciledReport as ReconciledReportORM
from earningstable.domain.reports import REPORT_BUSINESS_FIELDS, ReconciledReportData

from .upsert import (
    UpsertStats,
    changed_fields,
    fit_to_columns,
    persistence_errors,
    to_column_value,
)


logger = get_logger("repositories.reports_orm")

LOGO_REFRESH_DAYS = 30


def _to_domain(row: ReconciledReportORM) -> ReconciledReportData:
    return ReconciledReportData.model_validate(row)


async def upsert_reports(
    reports: Sequence[ReconciledReportData],
    chunk_size: int | None = None,
    force: bool = False,
) -> UpsertStats:
    """Change-aware upsert keyed by symbol; logo fields are left alone."""
    stats = UpsertStats()
    size = chunk_size or settings.batch_write_size

    for chunk in chunked(reports, size):
        async with persistence_errors("upsert_reports"), get_session() as session:
            result = await session.execute(
                select(ReconciledReportORM).where(
                    ReconciledReportORM.symbol.in_([r.symbol for r in chunk])
                )
            )
            existing = {row.symbol: row for row in result.scalars().all()}

            for report in chunk:
                values = fit_to_columns(ReconciledReportORM, report.business_values())
                row = existing.get(report.symbol)
                if row is None:
                    session.add(
                        ReconciledReportORM(
                            symbol=report.symbol,
                            snapshot_at=report.snapshot_at,
                            **{k: to_column_value(v) for k, v in values.items()},
                        )
                    )
                    stats.inserted += 1
                    stats.changed_keys.append(report.symbol)
                    continue

                if not force and not changed_fields(row, values, REPORT_BUSINESS_FIELDS):
                    stats.unchanged += 1
                    continue
                for name, value in values.items():
                    setattr(row, name, to_column_value(value))
                row.snapshot_at = report.snapshot_at
                stats.updated += 1
                stats.changed_keys.append(report.symbol)

            await session.commit()

    return stats


async def list_reports() -> list[ReconciledReportData]:
    """All current reports ordered by symbol."""
    async with get_session() as session:
        result = await session.execute(
            select(ReconciledReportORM).order_by(ReconciledReportORM.symbol)
        )
        return [_to_domain(row) for row in result.scalars().all()]


async def get_report(symbol: str) -> ReconciledReportData | None:
    async with get_session() as session:
        row = await session.scalar(
            select(ReconciledReportORM).where(ReconciledReportORM.symbol == symbol)
        )
        return _to_domain(row) if row else None


async def latest_report_date() -> date | None:
    async with get_session() as session:
        return await session.scalar(select(func.max(ReconciledReportORM.report_date)))


async def delete_reports_before(report_date: date) -> int:
    """Drop rows left over from an earlier trading day."""
    async with persistence_errors("delete_reports_before"), get_session() as session:
        result = await session.execute(
            delete(ReconciledReportORM).where(ReconciledReportORM.report_date < report_date)
        )
        await session.commit()
        return result.rowcount or 0


async def clear_reports() -> int:
    """Delete every report row (daily reset only)."""
    async with persistence_errors("clear_reports"), get_session() as session:
        result = await session.execute(delete(ReconciledReportORM))
        await session.commit()
        return result.rowcount or 0


# =============================================================================
# LOGO ENRICHMENT
# =============================================================================


async def update_report_logo(
    symbol: str,
    logo_url: str | None,
    logo_source: str | None,
    fetched_at: datetime | None = None,
) -> bool:
    """Write logo fields onto an existing report; False when the symbol has no row."""
    async with persistence_errors("update_report_logo"), get_session() as session:
        row = await session.scalar(
            select(ReconciledReportORM).where(ReconciledReportORM.symbol == symbol)
        )
        if row is None:
            return False
        row.logo_url = logo_url
        row.logo_source = logo_source
        row.logo_fetched_at = fetched_at or datetime.now(timezone.utc)
        await session.commit()
        return True


async def list_symbols_needing_logo(
    max_age_days: int = LOGO_REFRESH_DAYS, now: datetime | None = None
) -> list[str]:
    """Symbols whose logo is missing or was fetched more than ``max_age_days`` ago."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
    async with get_session() as session:
        result = await session.execute(
            select(ReconciledReportORM.symbol)
            .where(
                or_(
                    ReconciledReportORM.logo_url.is_(None),
                    ReconciledReportORM.logo_fetched_at.is_(None),
                    ReconciledReportORM.logo_fetched_at < cutoff,
                )
            )
            .order_by(ReconciledReportORM.symbol)
        )
        return list(result.scalars().all())
