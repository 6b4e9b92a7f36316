"""Structlog configuration shared by both processes, plus request logging.

``configure_structlog(process)`` is called once at startup by the ingress
app ("ingress") and by the worker ("worker"); the process name is bound
into every event. Production renders JSON lines, other environments the
console renderer.

``LoggingMiddleware`` logs one ``request_completed`` event per request
with method, path, status and duration. Slack redeliveries (the
``X-Slack-Retry-Num`` header) are tagged so duplicate mention callbacks
show up in the logs.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.warpi.config import Environment, get_settings

logger = structlog.get_logger(__name__)

# Health checks and scrapers hit these constantly; they are logged at debug level.
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def configure_structlog(process: str = "ingress") -> None:
    """Route structlog through stdlib logging and bind the process name."""
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.LOG_LEVEL.upper(),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(process=process)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Per-request logging with a request id.

    An inbound ``X-Request-ID`` is reused, otherwise a UUID is generated;
    either way it is bound for the duration of the request and echoed on
    the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        context = {"request_id": request_id}
        retry_num = request.headers.get("X-Slack-Retry-Num")
        if retry_num is not None:
            context["slack_retry"] = retry_num
            context["slack_retry_reason"] = request.headers.get("X-Slack-Retry-Reason")

        start_time = time.monotonic()
        with structlog.contextvars.bound_contextvars(**context):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
                raise

            response.headers["X-Request-ID"] = request_id

            if request.url.path in QUIET_PATHS:
                log_method = logger.debug
            elif response.status_code >= 500:
                log_method = logger.error
            elif response.status_code >= 400:
                log_method = logger.warning
            else:
                log_method = logger.info

            log_method(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )

        return response
