"""API application factory."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from earningstable.core.config import settings
from earningstable.core.exceptions import register_exception_handlers
from earningstable.core.logging import get_logger, run_id_var
from earningstable.schemas.common import ErrorResponse

from .routes import health, pipeline, reports


logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - initialize and cleanup resources."""
    from earningstable.cache.client import close_valkey_client
    from earningstable.database.connection import close_database, init_database

    try:
        await init_database(create_tables=False)
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database initialization failed (may be ok in tests): {e}")

    yield

    await close_database()
    await close_valkey_client()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its duration; tag log records with a request id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        run_id_var.set(request_id)
        start_time = time.monotonic()

        response = await call_next(request)

        duration = time.monotonic() - start_time
        response.headers["X-Request-ID"] = request_id

        # Log path only (not query params)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration:.3f}s)",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": int(duration * 1000),
            },
        )
        return response


def create_app() -> FastAPI:
    """Create and configure the read API application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Reconciled earnings table",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
        responses={
            404: {"model": ErrorResponse, "description": "Not Found"},
            500: {"model": ErrorResponse, "description": "Internal Server Error"},
        },
    )

    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(reports.router, prefix="/reports", tags=["Reports"])
    app.include_router(pipeline.router, prefix="/pipeline", tags=["Pipeline"])

    return app
