"""Pipeline run status repository using SQLAlchemy ORM.

Usage:
    from earningstable.repositories import run_status_orm

    await run_status_orm.mark_started("pipeline", started_at)
    await run_status_orm.mark_finished("pipeline", "success", finished_at, records_processed=42)
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from earningstable.core.logging import get_logger
from earningstable.database.connection import get_session
from earningstable.database.orm import PipelineRunStatus as PipelineRunStatusORM

from .upsert import persistence_errors


logger = get_logger("repositories.run_status_orm")

MAX_ERROR_LENGTH = 1000


class RunStatusRecord:
    """Stored status of one named job."""

    def __init__(
        self,
        job_name: str,
        status: str = "idle",
        last_started_at: datetime | None = None,
        last_finished_at: datetime | None = None,
        last_duration_ms: int | None = None,
        records_processed: int = 0,
        last_error: str | None = None,
        run_count: int = 0,
        error_count: int = 0,
    ):
        self.job_name = job_name
        self.status = status
        self.last_started_at = last_started_at
        self.last_finished_at = last_finished_at
        self.last_duration_ms = last_duration_ms
        self.records_processed = records_processed
        self.last_error = last_error
        self.run_count = run_count
        self.error_count = error_count

    @classmethod
    def from_orm(cls, row: PipelineRunStatusORM) -> "RunStatusRecord":
        return cls(
            job_name=row.job_name,
            status=row.status,
            last_started_at=row.last_started_at,
            last_finished_at=row.last_finished_at,
            last_duration_ms=row.last_duration_ms,
            records_processed=row.records_processed or 0,
            last_error=row.last_error,
            run_count=row.run_count or 0,
            error_count=row.error_count or 0,
        )


async def _get_or_create(session, job_name: str) -> PipelineRunStatusORM:
    row = await session.scalar(
        select(PipelineRunStatusORM).where(PipelineRunStatusORM.job_name == job_name)
    )
    if row is None:
        row = PipelineRunStatusORM(job_name=job_name, status="idle", run_count=0, error_count=0)
        session.add(row)
    return row


async def mark_started(job_name: str, started_at: datetime) -> None:
    async with persistence_errors("mark_started"), get_session() as session:
        row = await _get_or_create(session, job_name)
        row.status = "running"
        row.last_started_at = started_at
        await session.commit()


async def mark_finished(
    job_name: str,
    status: str,
    finished_at: datetime,
    records_processed: int = 0,
    error: str | None = None,
    duration_ms: int | None = None,
) -> None:
    """Record a finished run (``success`` or ``error``)."""
    async with persistence_errors("mark_finished"), get_session() as session:
        row = await _get_or_create(session, job_name)
        row.status = status
        row.last_finished_at = finished_at
        row.last_duration_ms = duration_ms
        row.records_processed = records_processed
        row.run_count = (row.run_count or 0) + 1

        if status == "success":
            row.last_error = None
        else:
            row.error_count = (row.error_count or 0) + 1
            row.last_error = error[:MAX_ERROR_LENGTH] if error else None

        await session.commit()


async def get_status(job_name: str) -> Optional[RunStatusRecord]:
    async with get_session() as session:
        row = await session.scalar(
            select(PipelineRunStatusORM).where(PipelineRunStatusORM.job_name == job_name)
        )
        return RunStatusRecord.from_orm(row) if row else None


async def list_statuses() -> List[RunStatusRecord]:
    async with get_session() as session:
        result = await session.execute(
            select(PipelineRunStatusORM).order_by(PipelineRunStatusORM.job_name)
        )
        return [RunStatusRecord.from_orm(row) for row in result.scalars().all()]
