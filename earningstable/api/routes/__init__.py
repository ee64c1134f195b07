"""API route modules."""

from . import health, pipeline, reports


__all__ = ["health", "pipeline", "reports"]
