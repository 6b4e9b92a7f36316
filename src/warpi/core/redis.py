"""Explicitly owned Redis connection handle.

The worker and the ingress app each construct one ``RedisConnection``,
open it at startup, hand ``connection.client`` to the stores that need
it, and close it on shutdown. Nothing in the package reaches for a
module-level client.
"""

from __future__ import annotations

from types import TracebackType

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class RedisConnection:
    """Lifecycle wrapper around a ``redis.asyncio.Redis`` client.

    Usage:
        async with RedisConnection(settings.REDIS_URL) as conn:
            log = EventLog(conn.client, stream, group)
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: aioredis.Redis | None = None

    @property
    def client(self) -> aioredis.Redis:
        """The open client.

        Raises:
            RuntimeError: If ``open()`` has not been called.
        """
        if self._client is None:
            raise RuntimeError("Redis connection not open -- call open() first")
        return self._client

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def open(self) -> aioredis.Redis:
        """Create the client and verify the server answers PING.

        Connection failures propagate; a worker that cannot reach Redis
        at startup is not expected to keep running.
        """
        if self._client is None:
            client = aioredis.from_url(self._url, decode_responses=True)
            try:
                await client.ping()
            except Exception:
                await client.aclose()
                raise
            self._client = client
            logger.info("redis_connected", url=_redact(self._url))
        return self._client

    async def close(self) -> None:
        """Close the client. Safe to call more than once."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_closed")

    async def __aenter__(self) -> RedisConnection:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def _redact(url: str) -> str:
    """Drop credentials from a redis:// URL before logging it."""
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"
