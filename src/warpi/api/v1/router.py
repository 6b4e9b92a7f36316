"""V1 API router -- aggregates all endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.warpi.api.v1 import debug, health, slack

router = APIRouter()

router.include_router(health.router)
router.include_router(slack.router)
router.include_router(debug.router)
