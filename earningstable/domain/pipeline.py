"""Pipeline run bookkeeping types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle of a named job: idle -> running -> success | error."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class RunOutcome(str, Enum):
    """What a trigger ended up doing."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED_RUNNING = "skipped_running"
    SKIPPED_QUIET_WINDOW = "skipped_quiet_window"
    SKIPPED_LOCK_HELD = "skipped_lock_held"
    SKIPPED_NOT_TRADING_DAY = "skipped_not_trading_day"


@dataclass(frozen=True)
class RunContext:
    """Inputs of one job run.

    Attributes:
        target_date: Overrides the trading day derived from the clock
        force: Write every row even when no business field changed
        symbols: Restricts the quote universe
        allow_clear: Permits the daily reset to delete rows
    """

    target_date: date | None = None
    force: bool = False
    symbols: tuple[str, ...] | None = None
    allow_clear: bool = False
    trigger: str = "manual"


@dataclass
class JobResult:
    """What a job did."""

    records_processed: int = 0
    written: int = 0
    unchanged: int = 0
    changed_symbols: list[str] = field(default_factory=list)
    message: str = ""

    def merge(self, other: JobResult) -> JobResult:
        return JobResult(
            records_processed=self.records_processed + other.records_processed,
            written=self.written + other.written,
            unchanged=self.unchanged + other.unchanged,
            changed_symbols=self.changed_symbols + other.changed_symbols,
            message="; ".join(m for m in (self.message, other.message) if m),
        )


@dataclass
class JobRunState:
    """In-process run state of one named job."""

    name: str
    status: JobStatus = JobStatus.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    records_processed: int = 0
    last_error: str | None = None
    deadline: datetime | None = None
    run_id: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == JobStatus.RUNNING


@dataclass(frozen=True)
class RunResult:
    """Return value of ``PipelineOrchestrator.trigger``."""

    job_name: str
    outcome: RunOutcome
    message: str = ""
    result: JobResult | None = None
    duration_ms: int | None = None

    @property
    def skipped(self) -> bool:
        return self.outcome.value.startswith("skipped")
