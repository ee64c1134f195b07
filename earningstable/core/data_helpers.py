"""
Centralized Data Conversion Helpers.

This module provides safe type conversion utilities used across the codebase.
All data conversion helpers should be imported from here to avoid duplication.

Usage:
    from earningstable.core.data_helpers import safe_decimal, safe_int, normalize_symbol
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, TypeVar


T = TypeVar("T")

TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")


def safe_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    """
    Safely convert value to Decimal.

    Handles None, empty strings, numeric strings, NaN and Inf gracefully.
    Floats go through ``str()`` so ``0.1`` becomes ``Decimal("0.1")``.

    Args:
        value: Any value to convert
        default: Default to return if conversion fails

    Returns:
        Finite Decimal value or default if conversion fails
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return default
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default
    if not result.is_finite():
        return default
    return result


def safe_int(value: Any, default: int | None = None) -> int | None:
    """
    Safely convert value to int.

    Handles None, float strings like "123.0", and conversion errors gracefully.
    Values are rounded half-up, not truncated.

    Args:
        value: Any value to convert
        default: Default to return if conversion fails

    Returns:
        Int value or default if conversion fails
    """
    dec = safe_decimal(value)
    if dec is None:
        return default
    return int(dec.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def safe_date(value: Any) -> date | None:
    """
    Safely convert value to date.

    Handles datetime, date and ISO strings.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def round_decimal(value: Decimal | None, places: Decimal = TWO_PLACES) -> Decimal | None:
    """Round half-up to a fixed number of places, passing None through."""
    if value is None:
        return None
    return value.quantize(places, rounding=ROUND_HALF_UP)


def normalize_symbol(value: Any) -> str | None:
    """Trim and uppercase a ticker; feed-style ``BRK-B`` becomes ``BRK.B``."""
    if value is None:
        return None
    symbol = str(value).strip().upper()
    if not symbol:
        return None
    return from_feed_symbol(symbol)


def to_feed_symbol(symbol: str) -> str:
    """Canonical dotted share class (``BRK.B``) to the quote feed's hyphenated form."""
    return symbol.replace(".", "-")


def from_feed_symbol(symbol: str) -> str:
    """Quote feed hyphenated share class (``BRK-B``) to the canonical dotted form."""
    return symbol.replace("-", ".")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]


__all__ = [
    "FOUR_PLACES",
    "TWO_PLACES",
    "chunked",
    "from_feed_symbol",
    "normalize_symbol",
    "round_decimal",
    "safe_date",
    "safe_decimal",
    "safe_int",
    "to_feed_symbol",
]
