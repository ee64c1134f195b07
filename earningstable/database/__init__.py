"""Database layer: async engine, sessions and ORM models."""

from .connection import (
    close_database,
    database_healthcheck,
    get_session,
    init_database,
)
from .orm import (
    Base,
    EarningsRecord,
    PipelineRunStatus,
    QuoteObservation,
    ReconciledReport,
)


__all__ = [
    "Base",
    "EarningsRecord",
    "PipelineRunStatus",
    "QuoteObservation",
    "ReconciledReport",
    "close_database",
    "database_healthcheck",
    "get_session",
    "init_database",
]
