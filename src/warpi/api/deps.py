"""FastAPI dependencies for the shared Redis-backed components.

The lifespan in ``src.warpi.main`` builds each component once and keeps
it on ``app.state``; these dependencies hand them to the endpoints.
Tests replace them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from fastapi import Request

from src.warpi.context.memory import ConversationMemory
from src.warpi.core.tenant import TenantTokenStore
from src.warpi.events.bus import EventLog
from src.warpi.services.llm import CompletionClient


async def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.connection.client


async def get_event_log(request: Request) -> EventLog:
    return request.app.state.event_log


async def get_memory(request: Request) -> ConversationMemory:
    return request.app.state.memory


async def get_token_store(request: Request) -> TenantTokenStore:
    return request.app.state.tokens


async def get_completion_client(request: Request) -> CompletionClient:
    return request.app.state.llm
