"""Prometheus metrics, Sentry integration, and completion call tracking.

Provides:
- Worker counters: entries by outcome, dead letters by reason
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_completion(): Context manager for completion call metrics
- init_sentry(): Initialize Sentry when a DSN is configured
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "warpi_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "warpi_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Worker Metrics ───────────────────────────────────────────────────────────

entries_total = Counter(
    "warpi_entries_total",
    "Stream entries reaching a terminal state",
    ["outcome"],
)

dead_letters_total = Counter(
    "warpi_dead_letters_total",
    "Entries written to the dead-letter stream",
    ["reason"],
)

entries_in_flight = Gauge(
    "warpi_entries_in_flight",
    "Entries currently being processed by this worker",
)

# ── Completion Metrics ───────────────────────────────────────────────────────

completion_attempts_total = Counter(
    "warpi_completion_attempts_total",
    "Completion API attempts",
    ["status"],
)

completion_duration_seconds = Histogram(
    "warpi_completion_duration_seconds",
    "Completion API request duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Label by route template (/memory/{team}/{channel}), not the raw path
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Completion Metrics Helper ────────────────────────────────────────────────


@asynccontextmanager
async def track_completion() -> AsyncGenerator[None, None]:
    """Record duration and success/error of one completion attempt.

    Usage:
        async with track_completion():
            answer = await client.complete(messages)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        completion_attempts_total.labels(status=status).inc()
        completion_duration_seconds.observe(time.perf_counter() - start_time)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
