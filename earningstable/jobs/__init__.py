"""Ingestion jobs, the pipeline orchestrator and its scheduler."""

from .definitions import DAILY_RESET_JOB, PIPELINE_JOB
from .dependencies import JobDependencies, QuoteCaches
from .orchestrator import PipelineOrchestrator
from .registry import get_job, list_job_names, register_job
from .scheduler import (
    JobScheduler,
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)


__all__ = [
    "DAILY_RESET_JOB",
    "PIPELINE_JOB",
    "JobDependencies",
    "JobScheduler",
    "PipelineOrchestrator",
    "QuoteCaches",
    "get_job",
    "get_scheduler",
    "list_job_names",
    "register_job",
    "start_scheduler",
    "stop_scheduler",
]
