"""Custom exceptions and centralized exception handlers."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class AppException(Exception):
    """Base application exception with structured error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.status_code = status_code or self.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to RFC 7807 problem+json style response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
            **({"details": self.details} if self.details else {}),
        }


class NotFoundError(AppException):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class ConfigurationError(AppException):
    """Settings are missing or inconsistent."""

    error_code = "CONFIGURATION_ERROR"
    message = "Invalid configuration"


class UpstreamError(AppException):
    """An upstream feed call failed."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "UPSTREAM_ERROR"
    message = "Upstream feed unavailable"

    def __init__(
        self,
        upstream: str,
        message: str | None = None,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.upstream = upstream
        self.upstream_status = status
        super().__init__(
            message=f"{upstream}: {message or self.message}",
            details={"upstream": upstream, "upstream_status": status, **(details or {})},
        )


class TransientUpstreamError(UpstreamError):
    """Network error, 5xx or 429 that survived every retry attempt."""

    error_code = "UPSTREAM_TRANSIENT"
    message = "Upstream temporarily unavailable"

    def __init__(
        self,
        upstream: str,
        message: str | None = None,
        status: int | None = None,
        attempts: int = 1,
    ):
        self.attempts = attempts
        super().__init__(upstream, message, status, {"attempts": attempts})


class PermanentUpstreamError(UpstreamError):
    """4xx other than 429; retrying would not help."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "UPSTREAM_REJECTED"
    message = "Upstream rejected the request"


class CircuitOpenError(UpstreamError):
    """Raised when the upstream's circuit breaker is open and blocking calls."""

    error_code = "CIRCUIT_OPEN"
    message = "Circuit breaker is open"


class PersistenceError(AppException):
    """Database write or read failed."""

    error_code = "PERSISTENCE_ERROR"
    message = "Database operation failed"


class JobError(AppException):
    """Job execution failed."""

    error_code = "JOB_ERROR"
    message = "Job execution failed"


def register_exception_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        import logging

        logger = logging.getLogger("earningstable.error")
        logger.exception(
            "Unhandled exception",
            extra={"path": request.url.path, "method": request.method},
        )

        from .config import settings

        message = str(exc) if settings.debug else "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": message,
                "status": 500,
            },
        )
