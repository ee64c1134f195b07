"""Domain models for strongly-typed data passed between jobs and services.

Usage:
    from earningstable.domain import EarningsRecordData, PriceObservation

    record = EarningsRecordData(symbol="AAPL", report_date=date(2025, 1, 30))
    data = record.model_dump()
"""

from earningstable.domain.earnings import (
    AnnouncementTiming,
    EarningsRecordData,
)
from earningstable.domain.pipeline import (
    JobResult,
    JobRunState,
    JobStatus,
    RunContext,
    RunOutcome,
    RunResult,
)
from earningstable.domain.quotes import (
    PriceLabel,
    PriceObservation,
    QualityFlag,
    QuoteInputs,
    QuoteObservationData,
    SizeBucket,
)
from earningstable.domain.reports import ReconciledReportData


__all__ = [
    "AnnouncementTiming",
    "EarningsRecordData",
    "JobResult",
    "JobRunState",
    "JobStatus",
    "PriceLabel",
    "PriceObservation",
    "QualityFlag",
    "QuoteInputs",
    "QuoteObservationData",
    "ReconciledReportData",
    "RunContext",
    "RunOutcome",
    "RunResult",
    "SizeBucket",
]
