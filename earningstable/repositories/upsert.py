"""Shared pieces of the change-aware upsert used by every table repository."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from earningstable.core.data_helpers import round_decimal
from earningstable.core.exceptions import PersistenceError
from earningstable.core.logging import get_logger


logger = get_logger("repositories.upsert")


@dataclass
class UpsertStats:
    """Outcome of one change-aware upsert."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    changed_keys: list[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def add(self, other: UpsertStats) -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.changed_keys.extend(other.changed_keys)


def to_column_value(value: Any) -> Any:
    """Enum members are stored by value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [to_column_value(v) for v in value]
    return value


def fit_to_columns(model: type, values: Mapping[str, Any]) -> dict[str, Any]:
    """Round decimals half-up to their Numeric column's scale, as the database stores them."""
    columns = model.__table__.columns
    fitted = dict(values)
    for name, value in values.items():
        if not isinstance(value, Decimal) or name not in columns:
            continue
        scale = getattr(columns[name].type, "scale", None)
        if scale is not None:
            fitted[name] = round_decimal(value, Decimal(1).scaleb(-scale))
    return fitted


def changed_fields(row: Any, values: Mapping[str, Any], fields: Iterable[str]) -> list[str]:
    """Business fields whose stored value differs from ``values``."""
    return [
        name
        for name in fields
        if to_column_value(getattr(row, name)) != to_column_value(values.get(name))
    ]


@asynccontextmanager
async def persistence_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise database failures as PersistenceError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"{operation} failed: {e}")
        raise PersistenceError(f"{operation} failed: {e}", details={"operation": operation}) from e
