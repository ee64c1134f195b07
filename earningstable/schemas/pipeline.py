"""Pipeline run status schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class JobStatusResponse(BaseModel):
    """Stored status of one named job."""

    job_name: str = Field(..., examples=["pipeline"])
    status: str = Field(..., examples=["idle", "running", "success", "error"])
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    records_processed: int = 0
    last_error: Optional[str] = None
    run_count: int = 0
    error_count: int = 0

    model_config = {"from_attributes": True}


class ScheduledJobResponse(BaseModel):
    id: str
    name: str
    next_run_time: Optional[str] = None
    pending: bool = False


class PipelineStatusResponse(BaseModel):
    jobs: List[JobStatusResponse] = Field(default_factory=list)
    scheduled: List[ScheduledJobResponse] = Field(default_factory=list)
