"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from earningstable.cache.client import valkey_healthcheck
from earningstable.core.config import settings
from earningstable.database.connection import database_healthcheck
from earningstable.schemas.common import HealthResponse


router = APIRouter(prefix="/health")


@router.get(
    "",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the API and its dependencies.",
)
async def health_check() -> HealthResponse:
    """
    Perform health check on API and dependencies.

    Valkey only backs the optional distributed lock, so it is checked only
    when that lock is enabled.
    """
    checks = {"database": await database_healthcheck()}
    if settings.distributed_lock_enabled:
        checks["cache"] = await valkey_healthcheck()

    if all(checks.values()):
        status = "healthy"
    elif checks["database"]:
        status = "degraded"  # DB ok but lock backend down
    else:
        status = "unhealthy"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the API process is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes-style liveness probe."""
    return {"status": "alive"}
