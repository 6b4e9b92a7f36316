"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.warpi.api.deps import get_redis
from src.warpi.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(redis=Depends(get_redis)):
    """Readiness check: verifies Redis answers PING.

    Returns 200 when Redis is reachable, 503 otherwise. A missing LLM key
    is reported as ``no_keys`` but does not fail the check; only the debug
    chat endpoint calls the model from this process.
    """
    settings = get_settings()
    checks: dict = {"redis": "ok", "llm": "ok" if settings.OPENAI_API_KEY else "no_keys"}
    try:
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    healthy = checks["redis"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
