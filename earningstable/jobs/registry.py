"""Job registry for mapping job names to functions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from earningstable.core.logging import get_logger


if TYPE_CHECKING:
    from earningstable.domain.pipeline import JobResult, RunContext

    from .dependencies import JobDependencies


logger = get_logger("jobs.registry")

JobFunc = Callable[["RunContext", "JobDependencies"], Awaitable["JobResult"]]

# Global job registry
_registry: dict[str, JobFunc] = {}


def register_job(name: str) -> Callable[[JobFunc], JobFunc]:
    """
    Decorator to register a job function.

    Usage:
        @register_job("earnings_feed")
        async def earnings_feed_job(ctx, deps) -> JobResult:
            ...
    """

    def decorator(func: JobFunc) -> JobFunc:
        _registry[name] = func
        logger.debug(f"Registered job: {name}")
        return func

    return decorator


def get_job(name: str) -> JobFunc | None:
    """Get a registered job function by name."""
    return _registry.get(name)


def get_all_jobs() -> dict[str, JobFunc]:
    """Get all registered jobs."""
    return _registry.copy()


def list_job_names() -> list[str]:
    """List all registered job names."""
    return list(_registry.keys())
