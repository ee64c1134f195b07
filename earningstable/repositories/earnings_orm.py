"""Earnings calendar repository using SQLAlchemy ORM.

Usage:
    from earningstable.repositories import earnings_orm

    stats = await earnings_orm.upsert_earnings(records)
    rows = await earnings_orm.list_earnings_for_date(day)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date

from sqlalchemy import delete, func, select

from earningstable.core.config import settings
from earningstable.core.data_helpers import chunked
from earningstable.core.logging import get_logger
from earningstable.database.connection import get_session
from earningstable.database.orm import EarningsRecord as EarningsRecordORM
from earningstable.domain.earnings import BUSINESS_FIELDS, EarningsRecordData

from .upsert import (
    UpsertStats,
    changed_fields,
    fit_to_columns,
    persistence_errors,
    to_column_value,
)


logger = get_logger("repositories.earnings_orm")


def _to_domain(row: EarningsRecordORM) -> EarningsRecordData:
    return EarningsRecordData.model_validate(row)


async def upsert_earnings(
    records: Sequence[EarningsRecordData],
    chunk_size: int | None = None,
    force: bool = False,
) -> UpsertStats:
    """
    Insert new (report_date, symbol) rows and update rows whose business fields differ.

    Each chunk commits in its own transaction; a failure leaves earlier
    chunks committed.
    """
    stats = UpsertStats()
    size = chunk_size or settings.batch_write_size

    for chunk in chunked(records, size):
        chunk_stats = UpsertStats()
        async with persistence_errors("upsert_earnings"), get_session() as session:
            dates = {r.report_date for r in chunk}
            symbols = {r.symbol for r in chunk}
            result = await session.execute(
                select(EarningsRecordORM).where(
                    EarningsRecordORM.report_date.in_(dates),
                    EarningsRecordORM.symbol.in_(symbols),
                )
            )
            existing = {(row.report_date, row.symbol): row for row in result.scalars().all()}

            for record in chunk:
                values = fit_to_columns(EarningsRecordORM, record.business_values())
                row = existing.get(record.key)
                if row is None:
                    session.add(
                        EarningsRecordORM(
                            symbol=record.symbol,
                            report_date=record.report_date,
                            **{k: to_column_value(v) for k, v in values.items()},
                        )
                    )
                    chunk_stats.inserted += 1
                    chunk_stats.changed_keys.append(record.symbol)
                    continue

                diff = changed_fields(row, values, BUSINESS_FIELDS)
                if not diff and not force:
                    chunk_stats.unchanged += 1
                    continue
                for name in BUSINESS_FIELDS:
                    setattr(row, name, to_column_value(values[name]))
                chunk_stats.updated += 1
                chunk_stats.changed_keys.append(record.symbol)

            await session.commit()
        stats.add(chunk_stats)
        logger.debug(
            f"Earnings chunk: {chunk_stats.inserted} inserted, "
            f"{chunk_stats.updated} updated, {chunk_stats.unchanged} unchanged"
        )

    return stats


async def list_earnings_for_date(report_date: date) -> list[EarningsRecordData]:
    """All earnings rows reported on ``report_date``, ordered by symbol."""
    async with get_session() as session:
        result = await session.execute(
            select(EarningsRecordORM)
            .where(EarningsRecordORM.report_date == report_date)
            .order_by(EarningsRecordORM.symbol)
        )
        return [_to_domain(row) for row in result.scalars().all()]


async def latest_report_date() -> date | None:
    async with get_session() as session:
        return await session.scalar(select(func.max(EarningsRecordORM.report_date)))


async def count_earnings() -> int:
    async with get_session() as session:
        return await session.scalar(select(func.count()).select_from(EarningsRecordORM)) or 0


async def clear_earnings() -> int:
    """Delete every earnings row (daily reset only)."""
    async with persistence_errors("clear_earnings"), get_session() as session:
        result = await session.execute(delete(EarningsRecordORM))
        await session.commit()
        return result.rowcount or 0
