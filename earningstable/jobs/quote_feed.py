"""Quote ingestion: per-symbol fetch, reconciliation and change-aware upsert.

Upstream failures for one symbol are isolated: the symbol is stored with
null fields and an ``upstream_*_error`` flag. An open circuit, a failed
previous-close fetch, or a cycle where every symbol failed transiently fails
the whole job.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal

from earningstable.core.config import settings
from earningstable.core.exceptions import (
    CircuitOpenError,
    JobError,
    PermanentUpstreamError,
    TransientUpstreamError,
    UpstreamError,
)
from earningstable.core.logging import get_logger
from earningstable.core.market_time import Session
from earningstable.domain.pipeline import JobResult, RunContext
from earningstable.domain.quotes import (
    PriceLabel,
    QualityFlag,
    QuoteInputs,
    QuoteObservationData,
)
from earningstable.repositories import quotes_orm
from earningstable.services.data_providers.polygon import (
    PreviousCloses,
    PriceSource,
    ReferenceData,
    SnapshotData,
)

from .dependencies import JobDependencies


logger = get_logger("jobs.quote_feed")


class QuoteFeedJob:
    """Refresh every symbol of the quote universe."""

    name = "quote_feed"

    def __init__(self, deps: JobDependencies):
        self.deps = deps

    # =========================================================================
    # Previous close
    # =========================================================================

    async def load_previous_closes(self, source: PriceSource, day: date) -> PreviousCloses:
        """Grouped closes for ``day`` or, when empty, the trading day before it."""
        window = self.deps.window

        async def load() -> PreviousCloses | None:
            closes = await source.get_previous_closes(day)
            if closes.is_empty:
                fallback = window.previous_trading_day(day)
                logger.warning(f"No grouped closes for {day} yet, falling back to {fallback}")
                closes = await source.get_previous_closes(fallback)
            return None if closes.is_empty else closes

        closes = await self.deps.caches.previous_closes.get_or_set(day.isoformat(), load)
        if closes is None:
            logger.warning(f"No previous closes available around {day}")
            return PreviousCloses(day=day)
        return closes

    # =========================================================================
    # Per symbol
    # =========================================================================

    async def _snapshot(self, source: PriceSource, symbol: str) -> SnapshotData | None:
        return await self.deps.caches.snapshots.get_or_set(
            symbol, lambda: source.get_snapshot(symbol)
        )

    async def _reference(self, source: PriceSource, symbol: str) -> ReferenceData | None:
        return await self.deps.caches.references.get_or_set(
            symbol, lambda: source.get_reference(symbol)
        )

    async def _corporate_action(self, source: PriceSource, symbol: str, now: datetime) -> bool | None:
        since = now.date() - timedelta(days=settings.corporate_action_window_days)
        try:
            return await self.deps.caches.corporate_actions.get_or_set(
                symbol, lambda: source.has_corporate_action(symbol, since)
            )
        except (PermanentUpstreamError, TransientUpstreamError) as e:
            logger.warning(f"{symbol}: corporate action lookup failed: {e.message}")
            return None

    async def resolve_symbol(
        self,
        source: PriceSource,
        symbol: str,
        closes: PreviousCloses,
        now: datetime,
        session: Session,
    ) -> QuoteObservationData:
        flags: set[str] = set()
        answered = False
        not_found = 0

        snapshot: SnapshotData | None = None
        reference: ReferenceData | None = None

        for kind in ("snapshot", "reference"):
            try:
                if kind == "snapshot":
                    snapshot = await self._snapshot(source, symbol)
                else:
                    reference = await self._reference(source, symbol)
                answered = True
            except PermanentUpstreamError as e:
                flags.add(QualityFlag.UPSTREAM_PERMANENT_ERROR.value)
                if e.upstream_status == 404:
                    not_found += 1
                logger.info(f"{symbol}: {kind} rejected ({e.upstream_status})")
            except TransientUpstreamError as e:
                flags.add(QualityFlag.UPSTREAM_TRANSIENT_ERROR.value)
                logger.warning(f"{symbol}: {kind} unavailable: {e.message}")

        if not_found == 2:
            flags.add(QualityFlag.SYMBOL_NOT_FOUND.value)

        observations = snapshot.observations if snapshot else ()
        previous_close_adjusted = closes.adjusted.get(symbol)
        previous_close_raw = closes.raw.get(symbol)

        previous_close: Decimal | None
        if previous_close_adjusted is not None:
            previous_close, source_tag = previous_close_adjusted, f"grouped_adjusted:{closes.day}"
        elif previous_close_raw is not None:
            previous_close, source_tag = previous_close_raw, f"grouped_raw:{closes.day}"
        else:
            previous_close = next(
                (o.price for o in observations if o.label == PriceLabel.PREVIOUS_CLOSE),
                None,
            )
            source_tag = "snapshot_prev_day" if previous_close is not None else None

        inputs = QuoteInputs(
            symbol=symbol,
            session=session,
            now=now,
            observations=observations,
            previous_close=previous_close,
            shares_outstanding=reference.shares_outstanding if reference else None,
            upstream_market_cap=reference.market_cap if reference else None,
            symbol_resolved=answered,
            extra_flags=frozenset(flags),
        )

        resolver = self.deps.resolver
        if resolver.detect_spike(inputs):
            found = await self._corporate_action(source, symbol, now)
            inputs = replace(inputs, recent_corporate_action=found)

        resolution = resolver.resolve(inputs)

        return QuoteObservationData(
            symbol=symbol,
            name=reference.name if reference else None,
            market_cap=resolution.market_cap,
            previous_market_cap=resolution.previous_market_cap,
            market_cap_diff=resolution.market_cap_diff,
            price=resolution.price,
            previous_close_raw=previous_close_raw,
            previous_close_adjusted=previous_close_adjusted,
            previous_close_source=source_tag,
            change_pct=resolution.change_pct,
            price_session=resolution.price_session,
            price_source=resolution.price_source,
            quality_flags=list(resolution.quality_flags),
            size=resolution.size,
            symbol_resolved=resolution.symbol_resolved,
            market_cap_resolved=resolution.market_cap_resolved,
            price_resolved=resolution.price_resolved,
            is_ready=resolution.is_ready,
            fetched_at=now,
        )

    # =========================================================================
    # Batching
    # =========================================================================

    async def fetch_all(
        self,
        source: PriceSource,
        symbols: list[str],
        closes: PreviousCloses,
        now: datetime,
        session: Session,
    ) -> list[QuoteObservationData]:
        limiter = self.deps.limiter
        delay = (
            self.deps.batch_delay_seconds
            if self.deps.batch_delay_seconds is not None
            else settings.quote_batch_delay_ms / 1000
        )
        results: list[QuoteObservationData] = []
        index = 0
        batch_no = 0

        while index < len(symbols):
            batch = symbols[index : index + limiter.batch_size]
            index += len(batch)
            batch_no += 1
            semaphore = limiter.semaphore()

            async def guarded(symbol: str) -> QuoteObservationData:
                async with semaphore:
                    started = time.monotonic()
                    ok = False
                    try:
                        row = await self.resolve_symbol(source, symbol, closes, now, session)
                        ok = QualityFlag.UPSTREAM_TRANSIENT_ERROR.value not in row.quality_flags
                        return row
                    finally:
                        limiter.record(ok, time.monotonic() - started)

            # siblings finish before an error leaves the batch; the source stays open for them
            outcomes = await asyncio.gather(
                *(guarded(s) for s in batch), return_exceptions=True
            )
            failures = [o for o in outcomes if isinstance(o, BaseException)]
            if failures:
                logger.warning(
                    f"Quote batch {batch_no}: {len(failures)} of {len(batch)} symbols aborted"
                )
                raise failures[0]
            results.extend(outcomes)
            logger.debug(
                f"Quote batch {batch_no}: {len(batch)} symbols "
                f"(concurrency {limiter.concurrency})"
            )
            limiter.adjust()

            if index < len(symbols) and delay > 0:
                await asyncio.sleep(delay)

        return results

    async def run(self, ctx: RunContext) -> JobResult:
        window = self.deps.window
        now = window.now()
        session = window.current_session(now)
        reference_day = (
            window.previous_trading_day(ctx.target_date)
            if ctx.target_date
            else window.reference_close_day(now)
        )

        symbols = list(ctx.symbols) if ctx.symbols else await quotes_orm.list_symbols()
        if not symbols:
            logger.info("Quote universe is empty, nothing to fetch")
            return JobResult(message="quote universe empty")

        logger.info(
            f"Fetching quotes for {len(symbols)} symbols "
            f"(session {session.value}, previous close {reference_day})"
        )

        source = self.deps.price_source_factory()
        try:
            try:
                closes = await self.load_previous_closes(source, reference_day)
            except UpstreamError as e:
                raise JobError(
                    f"previous close fetch failed: {e.message}",
                    details={"reference_day": reference_day.isoformat()},
                ) from e
            try:
                rows = await self.fetch_all(source, symbols, closes, now, session)
            except CircuitOpenError as e:
                raise JobError(f"quote feed circuit open: {e.message}") from e
        finally:
            await source.aclose()

        transient = sum(
            1
            for row in rows
            if not row.symbol_resolved
            and QualityFlag.UPSTREAM_TRANSIENT_ERROR.value in row.quality_flags
        )
        if transient == len(rows):
            raise JobError(f"quote feed unavailable for all {len(rows)} symbols")

        stats = await quotes_orm.upsert_observations(rows, force=ctx.force)
        ready = sum(1 for row in rows if row.is_ready)

        message = (
            f"{len(rows)} symbols, {ready} ready, {transient} transient failures: "
            f"{stats.inserted} inserted, {stats.updated} updated, {stats.unchanged} unchanged"
        )
        logger.info(f"Quote feed: {message}")
        return JobResult(
            records_processed=len(rows),
            written=stats.written,
            unchanged=stats.unchanged,
            changed_symbols=stats.changed_keys,
            message=message,
        )
