"""
Tests for quote reconciliation (price selection, percent change, market cap, size).
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from earningstable.core.market_time import Session, TimeWindow
from earningstable.domain.quotes import (
    PriceLabel,
    PriceObservation,
    QualityFlag,
    QuoteInputs,
    SizeBucket,
)
from earningstable.services.quote_resolver import (
    QuoteResolver,
    classify_size,
    normalize_timestamp_ms,
    percent_change,
    resolve_market_cap,
)


NOW = datetime(2024, 5, 14, 14, 30, tzinfo=timezone.utc)  # 10:30 New York


def ms(instant: datetime) -> int:
    return int(instant.timestamp() * 1000)


def obs(label: PriceLabel, price, at: datetime | None) -> PriceObservation:
    return PriceObservation(
        label=label,
        price=Decimal(str(price)) if price is not None else None,
        timestamp=ms(at) if at is not None else None,
    )


def inputs(*observations, session=Session.REGULAR, **kwargs) -> QuoteInputs:
    return QuoteInputs(
        symbol=kwargs.pop("symbol", "AAPL"),
        session=session,
        now=kwargs.pop("now", NOW),
        observations=tuple(observations),
        **kwargs,
    )


@pytest.fixture
def resolver() -> QuoteResolver:
    tw = TimeWindow(tz="America/New_York", clock=lambda: NOW)
    return QuoteResolver(window=tw, allow_prev_close_fallback=False, spike_threshold_pct=50)


# =============================================================================
# Timestamp normalization
# =============================================================================


class TestNormalizeTimestamp:
    """Unit detection by magnitude."""

    def test_nanoseconds(self):
        assert normalize_timestamp_ms(1.7e18) == 1_700_000_000_000

    def test_seconds(self):
        assert normalize_timestamp_ms(1.7e9) == 1_700_000_000_000

    def test_microseconds(self):
        assert normalize_timestamp_ms(1.7e15) == 1_700_000_000_000

    def test_milliseconds_unchanged(self):
        assert normalize_timestamp_ms(1_700_000_000_123) == 1_700_000_000_123

    @pytest.mark.parametrize("value", [None, 0, 12345, 1e9, float("nan"), float("inf"), True])
    def test_rejected(self, value):
        assert normalize_timestamp_ms(value) is None


# =============================================================================
# Percent change
# =============================================================================


class TestPercentChange:
    """(current - previous) / previous * 100, 4 dp."""

    def test_fifty_percent(self):
        assert percent_change(Decimal("150"), Decimal("100")) == Decimal("50.0000")

    def test_quantized_half_up(self):
        assert percent_change(Decimal("100"), Decimal("90")) == Decimal("11.1111")
        assert percent_change(Decimal("2"), Decimal("3")) == Decimal("-33.3333")

    @pytest.mark.parametrize("previous", ["0.0001", "0.00005", "0", "-1"])
    def test_tiny_or_non_positive_previous_is_undefined(self, previous):
        assert percent_change(Decimal("10"), Decimal(previous)) is None

    def test_just_above_threshold_is_defined(self):
        assert percent_change(Decimal("0.0002"), Decimal("0.00011")) is not None

    def test_missing_inputs(self):
        assert percent_change(None, Decimal("1")) is None
        assert percent_change(Decimal("1"), None) is None
        assert percent_change(Decimal("NaN"), Decimal("1")) is None

    def test_no_clamping(self):
        assert percent_change(Decimal("5000"), Decimal("1")) == Decimal("499900.0000")


# =============================================================================
# Size
# =============================================================================


class TestClassifySize:
    @pytest.mark.parametrize(
        "cap,expected",
        [
            (100_000_000_000, SizeBucket.MEGA),
            (99_999_999_999, SizeBucket.LARGE),
            (10_000_000_000, SizeBucket.LARGE),
            (1_000_000_000, SizeBucket.MID),
            (999_999_999, SizeBucket.SMALL),
            (None, None),
        ],
    )
    def test_thresholds(self, cap, expected):
        assert classify_size(cap) == expected


# =============================================================================
# Price selection
# =============================================================================


class TestSelectPrice:
    """Freshest qualifying observation, never a synthesized price."""

    def test_live_beats_minute_bar_at_same_time(self, resolver):
        at = NOW - timedelta(minutes=1)
        selection = resolver.select_price(
            inputs(obs(PriceLabel.MINUTE_BAR, 101, at), obs(PriceLabel.LIVE, 102, at))
        )
        assert selection.price == Decimal("102")
        assert selection.label == PriceLabel.LIVE
        assert selection.session == Session.REGULAR

    def test_newer_same_session_wins_over_priority(self, resolver):
        selection = resolver.select_price(
            inputs(
                obs(PriceLabel.LIVE, 100, NOW - timedelta(minutes=10)),
                obs(PriceLabel.MINUTE_BAR, 101, NOW - timedelta(minutes=1)),
            )
        )
        assert selection.label == PriceLabel.MINUTE_BAR

    def test_current_session_preferred_over_newer_other_session(self, resolver):
        # 09:00 New York is pre-market; the regular trade is older but in session
        pre = datetime(2024, 5, 14, 13, 0, tzinfo=timezone.utc)
        selection = resolver.select_price(
            inputs(
                obs(PriceLabel.PRE_MARKET, 99, pre),
                obs(PriceLabel.LIVE, 100, NOW - timedelta(minutes=20)),
            )
        )
        assert selection.label == PriceLabel.LIVE

    def test_stale_live_rejected_day_bar_accepted(self, resolver):
        two_hours_ago = NOW - timedelta(hours=2)
        # same-session live prints expire after 30 minutes, day bars after 24 hours
        selection = resolver.select_price(
            inputs(
                obs(PriceLabel.LIVE, 100, NOW - timedelta(minutes=31)),
                obs(PriceLabel.DAY_BAR, 98, two_hours_ago),
            )
        )
        assert selection.label == PriceLabel.DAY_BAR
        assert selection.price == Decimal("98")

    def test_future_timestamp_rejected(self, resolver):
        selection = resolver.select_price(
            inputs(obs(PriceLabel.LIVE, 100, NOW + timedelta(seconds=60)))
        )
        assert selection.price is None

    def test_small_clock_skew_tolerated(self, resolver):
        selection = resolver.select_price(
            inputs(obs(PriceLabel.LIVE, 100, NOW + timedelta(seconds=20)))
        )
        assert selection.price == Decimal("100")

    def test_non_positive_price_skipped(self, resolver):
        at = NOW - timedelta(minutes=1)
        selection = resolver.select_price(
            inputs(obs(PriceLabel.LIVE, 0, at), obs(PriceLabel.MINUTE_BAR, 101, at))
        )
        assert selection.price == Decimal("101")

    def test_missing_timestamp_rejected_for_live(self, resolver):
        selection = resolver.select_price(inputs(obs(PriceLabel.LIVE, 100, None)))
        assert selection.price is None

    def test_all_stale_yields_no_price(self, resolver):
        old = NOW - timedelta(days=2)
        resolution = resolver.resolve(
            inputs(
                obs(PriceLabel.LIVE, 100, old),
                obs(PriceLabel.DAY_BAR, 100, old),
                obs(PriceLabel.PREVIOUS_CLOSE, 95, None),
                previous_close=Decimal("95"),
            )
        )
        assert resolution.price is None
        assert resolution.price_source is None
        assert QualityFlag.NO_PRICE.value in resolution.quality_flags
        assert QualityFlag.PCT_UNDEFINED.value in resolution.quality_flags

    def test_previous_close_used_after_hours(self, resolver):
        selection = resolver.select_price(
            inputs(obs(PriceLabel.PREVIOUS_CLOSE, 95, None), session=Session.AFTER_HOURS)
        )
        assert selection.price == Decimal("95")
        assert selection.label == PriceLabel.PREVIOUS_CLOSE

    def test_previous_close_ignored_in_regular_session(self, resolver):
        selection = resolver.select_price(inputs(obs(PriceLabel.PREVIOUS_CLOSE, 95, None)))
        assert selection.price is None

    def test_previous_close_allowed_by_override(self):
        tw = TimeWindow(tz="America/New_York", clock=lambda: NOW)
        permissive = QuoteResolver(window=tw, allow_prev_close_fallback=True)
        selection = permissive.select_price(inputs(obs(PriceLabel.PREVIOUS_CLOSE, 95, None)))
        assert selection.price == Decimal("95")

    def test_previous_close_allowed_per_call(self, resolver):
        selection = resolver.select_price(
            inputs(obs(PriceLabel.PREVIOUS_CLOSE, 95, None), allow_stale_fallback=True)
        )
        assert selection.price == Decimal("95")


# =============================================================================
# Market cap
# =============================================================================


class TestResolveMarketCap:
    """Priority order and consistency checks."""

    def test_upstream_cap_with_shares(self):
        result = resolve_market_cap(
            upstream_market_cap=Decimal(1_000_000_000_000),
            price=Decimal(100),
            shares=Decimal(10_000_000_000),
            previous_close=Decimal(90),
            change_pct=percent_change(Decimal(100), Decimal(90)),
        )
        assert result.current == 1_000_000_000_000
        assert result.previous == 900_000_000_000
        assert result.delta == 100_000_000_000
        assert not result.flags

    def test_price_times_shares_when_no_upstream_cap(self):
        result = resolve_market_cap(None, Decimal(50), Decimal(1_000), Decimal(40), Decimal(25))
        assert result.current == 50_000
        assert result.previous == 40_000
        assert result.delta == 10_000
        assert QualityFlag.MARKET_CAP_FROM_PRICE_X_SHARES.value in result.flags

    def test_backsolved_previous_without_shares(self):
        result = resolve_market_cap(Decimal(1_100), Decimal(110), None, None, Decimal(10))
        assert result.previous == 1_000
        assert result.delta == 100
        assert QualityFlag.PREVIOUS_MARKET_CAP_BACKSOLVED.value in result.flags
        assert QualityFlag.NO_SHARES.value in result.flags
        assert QualityFlag.NO_PREVIOUS_CLOSE.value in result.flags

    def test_sign_corrected_when_delta_disagrees_with_change(self):
        # shares imply a falling cap while the price rose 10%
        result = resolve_market_cap(
            upstream_market_cap=Decimal(1_000_000_000_000),
            price=Decimal(110),
            shares=Decimal(11_000_000_000),
            previous_close=Decimal(100),
            change_pct=Decimal(10),
        )
        assert QualityFlag.DELTA_SIGN_CORRECTED.value in result.flags
        assert result.previous == 909_090_909_091
        assert result.delta > 0

    def test_zero_change_forces_zero_delta(self):
        result = resolve_market_cap(
            upstream_market_cap=Decimal(1_000_000_000_000),
            price=Decimal(100),
            shares=Decimal(11_000_000_000),
            previous_close=Decimal(100),
            change_pct=Decimal(0),
        )
        assert result.delta == 0

    def test_nothing_known(self):
        result = resolve_market_cap(None, None, None, None, None)
        assert result.current is None
        assert result.previous is None
        assert result.delta is None
        assert {
            QualityFlag.NO_CURRENT_MARKET_CAP.value,
            QualityFlag.NO_SHARES.value,
            QualityFlag.NO_PREVIOUS_CLOSE.value,
            QualityFlag.NO_PREVIOUS_MARKET_CAP.value,
            QualityFlag.NO_MARKET_CAP_DELTA.value,
        } <= result.flags

    @pytest.mark.parametrize(
        "price,previous_close,shares,cap",
        [
            ("110", "100", "11000000000", "1000000000000"),
            ("90", "100", "9000000000", "1000000000000"),
            ("101", "100", "10000000000", None),
            ("99", "100", None, "990000000"),
            ("100.5", "100", "5000000", "600000000"),
        ],
    )
    def test_delta_sign_matches_change_sign(self, price, previous_close, shares, cap):
        change = percent_change(Decimal(price), Decimal(previous_close))
        result = resolve_market_cap(
            Decimal(cap) if cap else None,
            Decimal(price),
            Decimal(shares) if shares else None,
            Decimal(previous_close),
            change,
        )
        assert result.delta is not None
        assert (result.delta > 0) == (change > 0)

    @pytest.mark.parametrize("price, expected", [("10.00003", 1), ("9.99997", -1)])
    def test_sub_unit_delta_keeps_sign(self, price, expected):
        change = percent_change(Decimal(price), Decimal(10))
        result = resolve_market_cap(None, Decimal(price), Decimal(10_000), Decimal(10), change)

        assert change != 0
        assert result.delta == expected


# =============================================================================
# Full resolution
# =============================================================================


class TestResolve:
    """End-to-end resolution for one symbol."""

    def test_spike_without_corporate_action_is_flagged(self, resolver):
        quote = inputs(
            obs(PriceLabel.LIVE, 150, NOW - timedelta(minutes=1)),
            previous_close=Decimal("100"),
            recent_corporate_action=False,
        )
        assert resolver.detect_spike(quote)
        resolution = resolver.resolve(quote)
        assert resolution.change_pct == Decimal("50.0000")
        assert QualityFlag.PCT_SPIKE.value in resolution.quality_flags

    def test_spike_explained_by_corporate_action(self, resolver):
        resolution = resolver.resolve(
            inputs(
                obs(PriceLabel.LIVE, 150, NOW - timedelta(minutes=1)),
                previous_close=Decimal("100"),
                recent_corporate_action=True,
            )
        )
        assert QualityFlag.RECENT_CORPORATE_ACTION.value in resolution.quality_flags
        assert QualityFlag.PCT_SPIKE.value not in resolution.quality_flags

    def test_small_move_is_not_a_spike(self, resolver):
        quote = inputs(
            obs(PriceLabel.LIVE, 101, NOW - timedelta(minutes=1)),
            previous_close=Decimal("100"),
        )
        assert not resolver.detect_spike(quote)

    def test_ready_when_all_resolved(self, resolver):
        resolution = resolver.resolve(
            inputs(
                obs(PriceLabel.LIVE, 100, NOW - timedelta(minutes=1)),
                previous_close=Decimal("90"),
                shares_outstanding=Decimal(10_000_000_000),
                upstream_market_cap=Decimal(1_000_000_000_000),
            )
        )
        assert resolution.is_ready
        assert resolution.size == SizeBucket.MEGA
        assert resolution.previous_market_cap == 900_000_000_000
        assert resolution.market_cap_diff == 100_000_000_000
        assert list(resolution.quality_flags) == sorted(resolution.quality_flags)

    def test_unresolved_symbol_is_never_ready(self, resolver):
        resolution = resolver.resolve(
            inputs(
                obs(PriceLabel.LIVE, 100, NOW - timedelta(minutes=1)),
                upstream_market_cap=Decimal(1_000_000_000),
                symbol_resolved=False,
            )
        )
        assert resolution.price_resolved
        assert resolution.market_cap_resolved
        assert not resolution.is_ready

    def test_extra_flags_carried(self, resolver):
        resolution = resolver.resolve(
            inputs(extra_flags=frozenset({QualityFlag.UPSTREAM_TRANSIENT_ERROR.value}))
        )
        assert QualityFlag.UPSTREAM_TRANSIENT_ERROR.value in resolution.quality_flags
        assert resolution.price is None
        assert resolution.market_cap is None
