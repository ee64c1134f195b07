"""Pipeline run status routes."""

from __future__ import annotations

from fastapi import APIRouter

from earningstable.jobs.scheduler import get_scheduler
from earningstable.repositories import run_status_orm
from earningstable.schemas.pipeline import (
    JobStatusResponse,
    PipelineStatusResponse,
    ScheduledJobResponse,
)


router = APIRouter()


@router.get(
    "/status",
    response_model=PipelineStatusResponse,
    summary="Pipeline run status",
    description="Last run of every job plus the next scheduled triggers, when a scheduler runs in this process.",
)
async def pipeline_status() -> PipelineStatusResponse:
    statuses = await run_status_orm.list_statuses()
    scheduler = get_scheduler()
    scheduled = scheduler.get_jobs_status() if scheduler else []
    return PipelineStatusResponse(
        jobs=[JobStatusResponse.model_validate(s, from_attributes=True) for s in statuses],
        scheduled=[ScheduledJobResponse(**job) for job in scheduled],
    )
