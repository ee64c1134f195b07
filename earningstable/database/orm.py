"""SQLAlchemy ORM models for the earnings table pipeline.

This module defines all database tables using SQLAlchemy 2.0 ORM style.
Uses async support via the asyncpg driver in production.

Usage:
    from earningstable.database.orm import QuoteObservation
    from earningstable.database.connection import get_session

    async with get_session() as session:
        row = await session.scalar(
            select(QuoteObservation).where(QuoteObservation.symbol == "AAPL")
        )
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


# Naming convention for constraints and indexes (deterministic names)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# FEED TABLES
# =============================================================================


class EarningsRecord(Base):
    """Earnings calendar entry; unique per (report_date, symbol)."""
    __tablename__ = "earnings_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    timing: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    eps_actual: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    eps_estimate: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    revenue_actual: Mapped[int | None] = mapped_column(BigInteger)
    revenue_estimate: Mapped[int | None] = mapped_column(BigInteger)
    fiscal_quarter: Mapped[int | None] = mapped_column(Integer)
    fiscal_year: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("report_date", "symbol", name="uq_earnings_records_date_symbol"),
        Index("idx_earnings_records_symbol", "symbol"),
    )


class QuoteObservation(Base):
    """Latest market snapshot per symbol (overwritten each run)."""
    __tablename__ = "quote_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    market_cap: Mapped[int | None] = mapped_column(BigInteger)
    previous_market_cap: Mapped[int | None] = mapped_column(BigInteger)
    market_cap_diff: Mapped[int | None] = mapped_column(BigInteger)
    price: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    previous_close_raw: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    previous_close_adjusted: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    previous_close_source: Mapped[str | None] = mapped_column(String(50))
    change_pct: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    price_session: Mapped[str | None] = mapped_column(String(20))
    price_source: Mapped[str | None] = mapped_column(String(20))
    quality_flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    size: Mapped[str | None] = mapped_column(String(10))
    symbol_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    market_cap_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_quote_observations_ready", "is_ready"),
    )


# =============================================================================
# REPORT TABLE
# =============================================================================


class ReconciledReport(Base):
    """Externally visible row: one per symbol present in both feeds."""
    __tablename__ = "reconciled_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    size: Mapped[str | None] = mapped_column(String(10))
    market_cap: Mapped[int | None] = mapped_column(BigInteger)
    market_cap_diff: Mapped[int | None] = mapped_column(BigInteger)
    price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    change_pct: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    eps_actual: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    eps_estimate: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    eps_surprise_pct: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    revenue_actual: Mapped[int | None] = mapped_column(BigInteger)
    revenue_estimate: Mapped[int | None] = mapped_column(BigInteger)
    revenue_surprise_pct: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    # Written by the logo enrichment collaborator only
    logo_url: Mapped[str | None] = mapped_column(Text)
    logo_source: Mapped[str | None] = mapped_column(String(50))
    logo_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_reconciled_reports_report_date", "report_date"),
    )


# =============================================================================
# PIPELINE BOOKKEEPING
# =============================================================================


class PipelineRunStatus(Base):
    """Last run outcome per named job."""
    __tablename__ = "pipeline_run_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    last_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_duration_ms: Mapped[int | None] = mapped_column(Integer)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
