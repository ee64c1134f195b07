"""
Quote reconciliation: price selection, percent change, market cap and size.

Everything here is pure: no I/O, no clock reads. The caller supplies the
observations, the reference previous close, the current session and ``now``.
Missing data never raises; it yields ``None`` fields plus quality flags.

Usage:
    from earningstable.services.quote_resolver import QuoteResolver

    resolver = QuoteResolver()
    resolution = resolver.resolve(inputs)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from earningstable.core.config import settings
from earningstable.core.data_helpers import FOUR_PLACES
from earningstable.core.market_time import Session, TimeWindow
from earningstable.domain.quotes import (
    PriceLabel,
    PriceObservation,
    QualityFlag,
    QuoteInputs,
    SizeBucket,
)


# =============================================================================
# Constants
# =============================================================================

MIN_PREVIOUS_CLOSE = Decimal("0.0001")
ZERO_CHANGE_EPSILON = Decimal("1e-9")
MAX_DELTA_FROM_PCT = Decimal(1000)

FUTURE_TOLERANCE_MS = 30_000
SAME_SESSION_MAX_AGE_MS = 30 * 60_000
DEFAULT_MAX_AGE_MS = 24 * 60 * 60_000

MEGA_CAP = Decimal(100_000_000_000)
LARGE_CAP = Decimal(10_000_000_000)
MID_CAP = Decimal(1_000_000_000)

LABEL_SESSION: dict[PriceLabel, Session] = {
    PriceLabel.PRE_MARKET: Session.PRE_MARKET,
    PriceLabel.LIVE: Session.REGULAR,
    PriceLabel.MINUTE_BAR: Session.REGULAR,
    PriceLabel.DAY_BAR: Session.REGULAR,
    PriceLabel.AFTER_HOURS: Session.AFTER_HOURS,
    PriceLabel.PREVIOUS_CLOSE: Session.CLOSED,
}

SESSION_PRIORITY: dict[Session, tuple[PriceLabel, ...]] = {
    Session.REGULAR: (
        PriceLabel.LIVE,
        PriceLabel.MINUTE_BAR,
        PriceLabel.AFTER_HOURS,
        PriceLabel.PRE_MARKET,
        PriceLabel.DAY_BAR,
        PriceLabel.PREVIOUS_CLOSE,
    ),
    Session.PRE_MARKET: (
        PriceLabel.PRE_MARKET,
        PriceLabel.LIVE,
        PriceLabel.MINUTE_BAR,
        PriceLabel.AFTER_HOURS,
        PriceLabel.DAY_BAR,
        PriceLabel.PREVIOUS_CLOSE,
    ),
    Session.AFTER_HOURS: (
        PriceLabel.AFTER_HOURS,
        PriceLabel.LIVE,
        PriceLabel.MINUTE_BAR,
        PriceLabel.DAY_BAR,
        PriceLabel.PRE_MARKET,
        PriceLabel.PREVIOUS_CLOSE,
    ),
    Session.CLOSED: (
        PriceLabel.LIVE,
        PriceLabel.AFTER_HOURS,
        PriceLabel.MINUTE_BAR,
        PriceLabel.DAY_BAR,
        PriceLabel.PRE_MARKET,
        PriceLabel.PREVIOUS_CLOSE,
    ),
}

INTRADAY_LABELS = frozenset({PriceLabel.LIVE, PriceLabel.MINUTE_BAR})


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class PriceSelection:
    """Selected price (or none) and where it came from."""

    price: Decimal | None = None
    label: PriceLabel | None = None
    session: Session | None = None
    timestamp_ms: int | None = None


@dataclass(frozen=True)
class MarketCapResult:
    current: int | None = None
    previous: int | None = None
    delta: int | None = None
    flags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class QuoteResolution:
    """Resolved quote fields for one symbol."""

    symbol: str
    price: Decimal | None
    price_session: Session | None
    price_source: PriceLabel | None
    previous_close: Decimal | None
    change_pct: Decimal | None
    market_cap: int | None
    previous_market_cap: int | None
    market_cap_diff: int | None
    size: SizeBucket | None
    quality_flags: tuple[str, ...] = field(default_factory=tuple)
    symbol_resolved: bool = False

    @property
    def market_cap_resolved(self) -> bool:
        return self.market_cap is not None

    @property
    def price_resolved(self) -> bool:
        return self.price is not None

    @property
    def is_ready(self) -> bool:
        return self.symbol_resolved and self.market_cap_resolved and self.price_resolved


# =============================================================================
# Pure helpers
# =============================================================================


def normalize_timestamp_ms(value: float | int | Decimal | None) -> int | None:
    """
    Normalize an epoch timestamp of unknown unit to milliseconds.

    Magnitude decides the unit: > 1e17 nanoseconds, > 1e14 microseconds,
    > 1e11 milliseconds, > 1e9 seconds. Anything else is rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        x = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(x):
        return None
    if x > 1e17:
        return int(x // 1e6)
    if x > 1e14:
        return int(x // 1e3)
    if x > 1e11:
        return int(x)
    if x > 1e9:
        return int(x * 1000)
    return None


def _is_positive(value: Decimal | None) -> bool:
    return value is not None and value.is_finite() and value > 0


def percent_change(current: Decimal | None, previous: Decimal | None) -> Decimal | None:
    """
    ``(current - previous) / previous * 100`` quantized to 4 dp.

    Returns None for missing, non-finite or non-positive inputs and for a
    previous close at or under 0.0001. Outliers are not clamped.
    """
    if not _is_positive(current) or not _is_positive(previous):
        return None
    if previous <= MIN_PREVIOUS_CLOSE:
        return None
    change = (current - previous) / previous * 100
    return change.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


def classify_size(market_cap: Decimal | int | None) -> SizeBucket | None:
    """Mega >= $100B, Large >= $10B, Mid >= $1B, else Small."""
    if market_cap is None:
        return None
    value = Decimal(market_cap)
    if value >= MEGA_CAP:
        return SizeBucket.MEGA
    if value >= LARGE_CAP:
        return SizeBucket.LARGE
    if value >= MID_CAP:
        return SizeBucket.MID
    return SizeBucket.SMALL


def _to_int(value: Decimal | None) -> int | None:
    if value is None:
        return None
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def _sign(value: Decimal) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _delta_to_int(delta: Decimal | None) -> int | None:
    """Whole-unit delta; a non-zero delta under one unit keeps its sign as +/-1."""
    rounded = _to_int(delta)
    if rounded == 0 and delta:
        return _sign(delta)
    return rounded


def _previous_from_change(current: Decimal, change: Decimal) -> Decimal | None:
    factor = 1 + change / 100
    if factor <= 0:
        return None
    try:
        return current / factor
    except (InvalidOperation, ZeroDivisionError):
        return None


def resolve_market_cap(
    upstream_market_cap: Decimal | None,
    price: Decimal | None,
    shares: Decimal | None,
    previous_close: Decimal | None,
    change_pct: Decimal | None,
) -> MarketCapResult:
    """
    Current/previous market cap and delta, in priority order.

    Decimal throughout; integers only in the returned result.
    """
    flags: set[str] = set()
    shares = shares if _is_positive(shares) else None
    price = price if _is_positive(price) else None
    previous_close = previous_close if _is_positive(previous_close) else None

    current = upstream_market_cap if _is_positive(upstream_market_cap) else None
    if current is None and price is not None and shares is not None:
        current = price * shares
        flags.add(QualityFlag.MARKET_CAP_FROM_PRICE_X_SHARES.value)
    if current is None:
        flags.add(QualityFlag.NO_CURRENT_MARKET_CAP.value)
    if shares is None:
        flags.add(QualityFlag.NO_SHARES.value)
    if previous_close is None:
        flags.add(QualityFlag.NO_PREVIOUS_CLOSE.value)

    previous: Decimal | None = None
    if previous_close is not None and shares is not None:
        previous = previous_close * shares
    elif current is not None and change_pct is not None:
        previous = _previous_from_change(current, change_pct)
        if previous is not None:
            flags.add(QualityFlag.PREVIOUS_MARKET_CAP_BACKSOLVED.value)
    elif current is not None and price is not None and previous_close is not None:
        estimated_shares = current / price
        previous = previous_close * estimated_shares
        flags.add(QualityFlag.SHARES_ESTIMATED.value)
    if previous is None:
        flags.add(QualityFlag.NO_PREVIOUS_MARKET_CAP.value)

    delta: Decimal | None = None
    if current is not None and previous is not None:
        delta = current - previous

    change_is_zero = change_pct is not None and abs(change_pct) < ZERO_CHANGE_EPSILON

    if (
        delta is not None
        and change_pct is not None
        and not change_is_zero
        and _sign(delta) != _sign(change_pct)
    ):
        corrected = _previous_from_change(current, change_pct)
        if corrected is not None:
            previous = corrected
            delta = current - previous
            flags.add(QualityFlag.DELTA_SIGN_CORRECTED.value)

    if change_is_zero and current is not None:
        delta = Decimal(0)

    if (
        delta is None
        and previous is not None
        and change_pct is not None
        and abs(change_pct) <= MAX_DELTA_FROM_PCT
    ):
        delta = previous * change_pct / 100
        flags.add(QualityFlag.DELTA_FROM_PCT.value)

    if delta is None:
        flags.add(QualityFlag.NO_MARKET_CAP_DELTA.value)

    return MarketCapResult(
        current=_to_int(current),
        previous=_to_int(previous),
        delta=_delta_to_int(delta),
        flags=frozenset(flags),
    )


# =============================================================================
# Resolver
# =============================================================================


class QuoteResolver:
    """
    Price selection and derived quote fields for one symbol at a time.

    Args:
        window: Exchange clock used to find each observation's session
        allow_prev_close_fallback: Use previous close as a price in any session
        spike_threshold_pct: Absolute change that is flagged as a spike
    """

    def __init__(
        self,
        window: TimeWindow | None = None,
        allow_prev_close_fallback: bool | None = None,
        spike_threshold_pct: float | Decimal | None = None,
    ):
        self.window = window or TimeWindow()
        self.allow_prev_close_fallback = (
            settings.allow_prev_close_fallback
            if allow_prev_close_fallback is None
            else allow_prev_close_fallback
        )
        threshold = (
            settings.spike_threshold_pct if spike_threshold_pct is None else spike_threshold_pct
        )
        self.spike_threshold = Decimal(str(threshold))

    def _allows_stale(self, inputs: QuoteInputs) -> bool:
        return (
            inputs.allow_stale_fallback
            or self.allow_prev_close_fallback
            or inputs.session == Session.AFTER_HOURS
        )

    def observation_session(self, observation: PriceObservation, ts_ms: int | None) -> Session:
        if ts_ms is None:
            return LABEL_SESSION[observation.label]
        instant = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
        return self.window.current_session(instant)

    def select_price(self, inputs: QuoteInputs) -> PriceSelection:
        """Pick the freshest qualifying observation; never synthesize a price."""
        allow_stale = self._allows_stale(inputs)
        current = inputs.session
        priority = SESSION_PRIORITY[current]
        now_ms = int(inputs.now.timestamp() * 1000)

        candidates = []
        for obs in inputs.observations:
            if obs.label == PriceLabel.PREVIOUS_CLOSE and not allow_stale:
                continue
            ts_ms = normalize_timestamp_ms(obs.timestamp)
            own_session = self.observation_session(obs, ts_ms)
            candidates.append((obs, ts_ms, own_session))

        candidates.sort(
            key=lambda c: (
                0 if c[2] == current else 1,
                -c[1] if c[1] is not None else math.inf,
                priority.index(c[0].label),
            )
        )

        for obs, ts_ms, own_session in candidates:
            if not _is_positive(obs.price):
                continue
            if ts_ms is None:
                if obs.label != PriceLabel.PREVIOUS_CLOSE:
                    continue
            else:
                if ts_ms > now_ms + FUTURE_TOLERANCE_MS:
                    continue
                max_age = (
                    SAME_SESSION_MAX_AGE_MS
                    if obs.label in INTRADAY_LABELS and own_session == current
                    else DEFAULT_MAX_AGE_MS
                )
                if now_ms - ts_ms > max_age:
                    continue
            return PriceSelection(
                price=obs.price, label=obs.label, session=own_session, timestamp_ms=ts_ms
            )

        return PriceSelection()

    def is_spike(self, change_pct: Decimal | None) -> bool:
        return change_pct is not None and abs(change_pct) >= self.spike_threshold

    def detect_spike(self, inputs: QuoteInputs) -> bool:
        """True when the selected price moved past the spike threshold.

        Lets the caller look up corporate actions only when needed.
        """
        selection = self.select_price(inputs)
        return self.is_spike(percent_change(selection.price, inputs.previous_close))

    def resolve(self, inputs: QuoteInputs) -> QuoteResolution:
        flags: set[str] = set(inputs.extra_flags)

        selection = self.select_price(inputs)
        if selection.price is None:
            flags.add(QualityFlag.NO_PRICE.value)

        change = percent_change(selection.price, inputs.previous_close)
        if change is None:
            flags.add(QualityFlag.PCT_UNDEFINED.value)
        elif self.is_spike(change):
            if inputs.recent_corporate_action:
                flags.add(QualityFlag.RECENT_CORPORATE_ACTION.value)
            else:
                flags.add(QualityFlag.PCT_SPIKE.value)

        caps = resolve_market_cap(
            upstream_market_cap=inputs.upstream_market_cap,
            price=selection.price,
            shares=inputs.shares_outstanding,
            previous_close=inputs.previous_close,
            change_pct=change,
        )
        flags |= caps.flags

        return QuoteResolution(
            symbol=inputs.symbol,
            price=selection.price,
            price_session=selection.session,
            price_source=selection.label,
            previous_close=inputs.previous_close,
            change_pct=change,
            market_cap=caps.current,
            previous_market_cap=caps.previous,
            market_cap_diff=caps.delta,
            size=classify_size(caps.current),
            quality_flags=tuple(sorted(flags)),
            symbol_resolved=inputs.symbol_resolved,
        )


__all__ = [
    "MarketCapResult",
    "PriceSelection",
    "QuoteResolution",
    "QuoteResolver",
    "classify_size",
    "normalize_timestamp_ms",
    "percent_change",
    "resolve_market_cap",
]
