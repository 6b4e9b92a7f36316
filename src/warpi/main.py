"""FastAPI application factory for the Slack ingress.

Creates the app with logging and metrics middleware, lifespan events
that open and close the Redis connection, and the v1 router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.warpi.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.warpi.api.v1.router import router as v1_router
from src.warpi.config import get_settings
from src.warpi.context.memory import ConversationMemory
from src.warpi.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.warpi.core.redis import RedisConnection
from src.warpi.core.tenant import TenantTokenStore
from src.warpi.events.bus import EventLog
from src.warpi.services.llm import CompletionClient

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open Redis and build the shared components on startup; close on shutdown."""
    settings = get_settings()
    configure_structlog("ingress")

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    connection = RedisConnection(settings.REDIS_URL)
    await connection.open()

    app.state.connection = connection
    app.state.event_log = EventLog(
        connection.client, settings.STREAM_NAME, settings.CONSUMER_GROUP,
    )
    app.state.memory = ConversationMemory(connection.client, max_turns=settings.MAX_TURNS)
    app.state.tokens = TenantTokenStore(connection.client)
    app.state.llm = CompletionClient(settings)

    logger.info("ingress_started", stream=settings.STREAM_NAME)
    try:
        yield
    finally:
        await connection.close()
        logger.info("ingress_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Warpi",
        version="0.1.0",
        description="Slack mention relay backed by a Redis Stream",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
