"""Exchange clock: sessions and trading days in exchange-local time.

Session boundaries (exchange-local, minute of day):
    pre_market   04:00 - 09:30
    regular      09:30 - 16:00
    after_hours  16:00 - 20:00
    closed       everything else, weekends and holidays

Usage:
    from earningstable.core.market_time import TimeWindow

    window = TimeWindow()
    day = window.trading_day()
    session = window.current_session()
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo

from .config import settings


class Session(str, Enum):
    """Exchange session for a given instant."""

    PRE_MARKET = "pre_market"
    REGULAR = "regular"
    AFTER_HOURS = "after_hours"
    CLOSED = "closed"


PRE_MARKET_OPEN = time(4, 0)
REGULAR_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)
AFTER_HOURS_CLOSE = time(20, 0)

HolidayPredicate = Callable[[date], bool]
Clock = Callable[[], datetime]


def _no_holidays(_: date) -> bool:
    return False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimeWindow:
    """Session and trading-day arithmetic for one exchange timezone.

    Args:
        tz: Exchange timezone (defaults to ``settings.exchange_timezone``)
        clock: Returns the current aware instant; injectable for tests
        is_holiday: Optional predicate marking exchange holidays
    """

    def __init__(
        self,
        tz: ZoneInfo | str | None = None,
        clock: Clock | None = None,
        is_holiday: HolidayPredicate | None = None,
    ):
        if tz is None:
            tz = settings.tz
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._clock = clock or _utc_now
        self._is_holiday = is_holiday or _no_holidays

    def now(self) -> datetime:
        """Current instant in the exchange timezone."""
        return self.localize(self._clock())

    def localize(self, instant: datetime) -> datetime:
        """Convert to exchange time; naive datetimes are taken as UTC."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self._is_holiday(day)

    def current_session(self, instant: datetime | None = None) -> Session:
        local = self.localize(instant) if instant is not None else self.now()
        if not self.is_trading_day(local.date()):
            return Session.CLOSED

        clock_time = local.time()
        if PRE_MARKET_OPEN <= clock_time < REGULAR_OPEN:
            return Session.PRE_MARKET
        if REGULAR_OPEN <= clock_time < REGULAR_CLOSE:
            return Session.REGULAR
        if REGULAR_CLOSE <= clock_time < AFTER_HOURS_CLOSE:
            return Session.AFTER_HOURS
        return Session.CLOSED

    def previous_trading_day(self, day: date) -> date:
        """Calendar day before ``day``, skipping weekends and holidays."""
        candidate = day - timedelta(days=1)
        while not self.is_trading_day(candidate):
            candidate -= timedelta(days=1)
        return candidate

    def trading_day(self, instant: datetime | None = None) -> date:
        """Date the feeds should be queried for at ``instant``.

        Non-trading days roll back to the last trading day; a trading day
        before the regular open rolls back to the previous trading day.
        """
        local = self.localize(instant) if instant is not None else self.now()
        day = local.date()
        if not self.is_trading_day(day):
            return self.previous_trading_day(day)
        if local.time() < REGULAR_OPEN:
            return self.previous_trading_day(day)
        return day

    def reference_close_day(self, instant: datetime | None = None) -> date:
        """Trading day whose close is "previous close" at ``instant``.

        The day before the current trading date: pre-market on Tuesday
        compares against Monday, a Saturday against Thursday.
        """
        local = self.localize(instant) if instant is not None else self.now()
        day = local.date()
        if not self.is_trading_day(day):
            day = self.previous_trading_day(day)
        return self.previous_trading_day(day)

    def midnight(self, day: date) -> datetime:
        """Exchange-local midnight starting ``day`` (timezone-aware)."""
        return datetime.combine(day, time(0, 0), tzinfo=self.tz)

    def at(self, day: date, clock_time: time) -> datetime:
        return datetime.combine(day, clock_time, tzinfo=self.tz)


__all__ = [
    "Clock",
    "HolidayPredicate",
    "Session",
    "TimeWindow",
]
