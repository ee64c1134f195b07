"""Quote observation repository using SQLAlchemy ORM.

Owns the quote universe: EarningsFeedJob seeds symbol-only rows here and
the quote ingestion path fills them in.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy import delete, select

from earningstable.core.config import settings
from earningstable.core.data_helpers import chunked
from earningstable.core.logging import get_logger
from earningstable.database.connection import get_session
from earningstable.database.orm import QuoteObservation as QuoteObservationORM
from earningstable.domain.quotes import QuoteObservationData

from .upsert import (
    UpsertStats,
    changed_fields,
    fit_to_columns,
    persistence_errors,
    to_column_value,
)


logger = get_logger("repositories.quotes_orm")

# fetched_at changes every run and is not a business field
OBSERVATION_FIELDS = (
    "name",
    "market_cap",
    "previous_market_cap",
    "market_cap_diff",
    "price",
    "previous_close_raw",
    "previous_close_adjusted",
    "previous_close_source",
    "change_pct",
    "price_session",
    "price_source",
    "quality_flags",
    "size",
    "symbol_resolved",
    "market_cap_resolved",
    "price_resolved",
    "is_ready",
)


def _to_domain(row: QuoteObservationORM) -> QuoteObservationData:
    return QuoteObservationData.model_validate(row)


async def seed_symbols(symbols: Iterable[str]) -> list[str]:
    """Insert symbol-only rows for symbols not yet in the universe; returns the new ones."""
    wanted = sorted(set(symbols))
    if not wanted:
        return []

    added: list[str] = []
    async with persistence_errors("seed_symbols"), get_session() as session:
        result = await session.execute(
            select(QuoteObservationORM.symbol).where(QuoteObservationORM.symbol.in_(wanted))
        )
        present = set(result.scalars().all())
        for symbol in wanted:
            if symbol in present:
                continue
            session.add(QuoteObservationORM(symbol=symbol, quality_flags=[]))
            added.append(symbol)
        await session.commit()

    if added:
        logger.info(f"Seeded {len(added)} symbols into the quote universe")
    return added


async def list_symbols() -> list[str]:
    async with get_session() as session:
        result = await session.execute(
            select(QuoteObservationORM.symbol).order_by(QuoteObservationORM.symbol)
        )
        return list(result.scalars().all())


async def upsert_observations(
    observations: Sequence[QuoteObservationData],
    chunk_size: int | None = None,
    force: bool = False,
) -> UpsertStats:
    """Change-aware upsert keyed by symbol, one transaction per chunk."""
    stats = UpsertStats()
    size = chunk_size or settings.batch_write_size

    for chunk in chunked(observations, size):
        async with persistence_errors("upsert_observations"), get_session() as session:
            result = await session.execute(
                select(QuoteObservationORM).where(
                    QuoteObservationORM.symbol.in_([o.symbol for o in chunk])
                )
            )
            existing = {row.symbol: row for row in result.scalars().all()}

            for observation in chunk:
                values = fit_to_columns(
                    QuoteObservationORM,
                    {name: getattr(observation, name) for name in OBSERVATION_FIELDS},
                )
                row = existing.get(observation.symbol)
                if row is None:
                    session.add(
                        QuoteObservationORM(
                            symbol=observation.symbol,
                            fetched_at=observation.fetched_at,
                            **{k: to_column_value(v) for k, v in values.items()},
                        )
                    )
                    stats.inserted += 1
                    stats.changed_keys.append(observation.symbol)
                    continue

                if not force and not changed_fields(row, values, OBSERVATION_FIELDS):
                    stats.unchanged += 1
                    continue
                for name, value in values.items():
                    setattr(row, name, to_column_value(value))
                row.fetched_at = observation.fetched_at
                stats.updated += 1
                stats.changed_keys.append(observation.symbol)

            await session.commit()

    return stats


async def get_observation(symbol: str) -> QuoteObservationData | None:
    async with get_session() as session:
        row = await session.scalar(
            select(QuoteObservationORM).where(QuoteObservationORM.symbol == symbol)
        )
        return _to_domain(row) if row else None


async def list_ready_observations() -> list[QuoteObservationData]:
    """Fully ready rows with a market cap, ordered by symbol."""
    async with get_session() as session:
        result = await session.execute(
            select(QuoteObservationORM)
            .where(
                QuoteObservationORM.is_ready.is_(True),
                QuoteObservationORM.market_cap.is_not(None),
            )
            .order_by(QuoteObservationORM.symbol)
        )
        return [_to_domain(row) for row in result.scalars().all()]


async def clear_observations() -> int:
    """Delete every quote row (daily reset only)."""
    async with persistence_errors("clear_observations"), get_session() as session:
        result = await session.execute(delete(QuoteObservationORM))
        await session.commit()
        return result.rowcount or 0
