"""Quote domain models: raw price observations and the stored per-symbol snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from earningstable.core.market_time import Session


class PriceLabel(str, Enum):
    """Sub-session a raw price observation was reported under."""

    PRE_MARKET = "pre_market"
    LIVE = "live"
    AFTER_HOURS = "after_hours"
    MINUTE_BAR = "minute_bar"
    DAY_BAR = "day_bar"
    PREVIOUS_CLOSE = "previous_close"


class SizeBucket(str, Enum):
    """Company size by market cap."""

    MEGA = "Mega"
    LARGE = "Large"
    MID = "Mid"
    SMALL = "Small"


class QualityFlag(str, Enum):
    """Machine-readable reasons a derived field is null or suspect."""

    NO_PRICE = "no_price"
    PCT_UNDEFINED = "pct_undefined"
    PCT_SPIKE = "pct_spike_no_corporate_action"
    RECENT_CORPORATE_ACTION = "recent_corporate_action"
    NO_CURRENT_MARKET_CAP = "no_current_market_cap"
    NO_SHARES = "no_shares"
    NO_PREVIOUS_CLOSE = "no_previous_close"
    NO_PREVIOUS_MARKET_CAP = "no_previous_market_cap"
    MARKET_CAP_FROM_PRICE_X_SHARES = "market_cap_from_price_x_shares"
    PREVIOUS_MARKET_CAP_BACKSOLVED = "previous_market_cap_backsolved"
    SHARES_ESTIMATED = "shares_estimated"
    DELTA_SIGN_CORRECTED = "delta_sign_corrected"
    DELTA_FROM_PCT = "delta_from_pct"
    NO_MARKET_CAP_DELTA = "no_market_cap_delta"
    SYMBOL_NOT_FOUND = "symbol_not_found"
    UPSTREAM_PERMANENT_ERROR = "upstream_permanent_error"
    UPSTREAM_TRANSIENT_ERROR = "upstream_transient_error"


@dataclass(frozen=True)
class PriceObservation:
    """One candidate price; ``timestamp`` is raw epoch in any unit (s/ms/us/ns)."""

    label: PriceLabel
    price: Decimal | None
    timestamp: float | int | None = None


@dataclass(frozen=True)
class QuoteInputs:
    """Everything the resolver needs for one symbol."""

    symbol: str
    session: Session
    now: datetime
    observations: tuple[PriceObservation, ...] = ()
    previous_close: Decimal | None = None
    shares_outstanding: Decimal | None = None
    upstream_market_cap: Decimal | None = None
    recent_corporate_action: bool | None = None
    allow_stale_fallback: bool = False
    symbol_resolved: bool = True
    extra_flags: frozenset[str] = field(default_factory=frozenset)


class QuoteObservationData(BaseModel):
    """Latest known market snapshot for one symbol (one stored row)."""

    symbol: str
    name: str | None = None

    market_cap: int | None = None
    previous_market_cap: int | None = None
    market_cap_diff: int | None = None

    price: Decimal | None = None
    previous_close_raw: Decimal | None = None
    previous_close_adjusted: Decimal | None = None
    previous_close_source: str | None = None
    change_pct: Decimal | None = None

    price_session: Session | None = None
    price_source: PriceLabel | None = None
    quality_flags: list[str] = Field(default_factory=list)
    size: SizeBucket | None = None

    symbol_resolved: bool = False
    market_cap_resolved: bool = False
    price_resolved: bool = False
    is_ready: bool = False

    fetched_at: datetime | None = None

    model_config = {
        "from_attributes": True,
    }
