"""Pydantic response schemas for the read API."""

from .common import ErrorResponse, HealthResponse
from .pipeline import JobStatusResponse, PipelineStatusResponse
from .reports import ReportResponse


__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "JobStatusResponse",
    "PipelineStatusResponse",
    "ReportResponse",
]
