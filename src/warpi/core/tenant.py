"""Per-workspace Slack credentials.

Every Slack workspace that installs the app is a tenant. The OAuth
callback stores the workspace's bot token in a shared Redis hash, and
the worker reads it on every delivery to build a client for that
workspace. There is no rotation, expiry or local caching.

Hash key: ``slack_tokens`` (field = team id, value = bot token)
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

TOKENS_KEY = "slack_tokens"


class TenantTokenStore:
    """Team id -> bot access token mapping."""

    def __init__(self, redis: aioredis.Redis, key: str = TOKENS_KEY) -> None:
        self._redis = redis
        self._key = key

    async def get(self, team_id: str) -> str | None:
        """Token for ``team_id``, or None if the workspace never installed."""
        token = await self._redis.hget(self._key, team_id)
        if not token:
            logger.warning("No Slack token stored for team %s", team_id)
            return None
        return token

    async def save(self, team_id: str, token: str) -> None:
        """Store (or overwrite) the token written by the install flow."""
        if not team_id or not token:
            raise ValueError("team_id and token are required")
        await self._redis.hset(self._key, team_id, token)
        logger.info("Stored Slack token for team %s", team_id)
