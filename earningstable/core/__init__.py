"""Core infrastructure: settings, logging, exceptions, exchange clock."""

from .config import Settings, get_settings, settings
from .exceptions import (
    AppException,
    CircuitOpenError,
    ConfigurationError,
    JobError,
    NotFoundError,
    PermanentUpstreamError,
    PersistenceError,
    TransientUpstreamError,
    UpstreamError,
)
from .market_time import Session, TimeWindow


__all__ = [
    "AppException",
    "CircuitOpenError",
    "ConfigurationError",
    "JobError",
    "NotFoundError",
    "PermanentUpstreamError",
    "PersistenceError",
    "Session",
    "Settings",
    "TimeWindow",
    "TransientUpstreamError",
    "UpstreamError",
    "get_settings",
    "settings",
]
