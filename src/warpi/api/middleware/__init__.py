"""API middleware package."""

from src.warpi.api.middleware.logging import LoggingMiddleware, configure_structlog

__all__ = ["LoggingMiddleware", "configure_structlog"]
