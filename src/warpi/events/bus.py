"""Mention event log on a Redis Stream with consumer-group delivery.

The ingress appends one entry per mention; worker processes read through
a shared consumer group so each entry is delivered to exactly one of
them. An entry is retired by XACK followed by XDEL in one transaction;
processed entries are not kept in the stream.

Stream key: ``STREAM_NAME`` (default ``events:incoming``), one field
``payload`` per entry.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog

from src.warpi.events.schemas import PAYLOAD_FIELD, QueuePayload

logger = structlog.get_logger(__name__)

StreamEntry = tuple[str, dict[str, str]]


class EventLog:
    """Append, fetch and retire entries on one stream for one group.

    Args:
        redis: Async Redis client (``decode_responses=True``).
        stream: Stream key.
        group: Consumer group name.
    """

    def __init__(self, redis: aioredis.Redis, stream: str, group: str) -> None:
        self._redis = redis
        self._stream = stream
        self._group = group

    @property
    def stream(self) -> str:
        return self._stream

    @property
    def group(self) -> str:
        return self._group

    async def ensure_group(self) -> bool:
        """Create the consumer group at the start of the stream if missing.

        Returns:
            True if the group was created, False if it already existed.

        Raises:
            redis.ResponseError: Any failure other than BUSYGROUP.
        """
        try:
            await self._redis.xgroup_create(
                self._stream, self._group, id="0", mkstream=True,
            )
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                logger.error(
                    "consumer_group_create_failed",
                    stream=self._stream,
                    group=self._group,
                    error=str(exc),
                )
                raise
            logger.info("consumer_group_exists", stream=self._stream, group=self._group)
            return False

        logger.info("consumer_group_created", stream=self._stream, group=self._group)
        return True

    async def append(self, payload: QueuePayload | str) -> str:
        """Append a payload to the stream.

        Args:
            payload: A QueuePayload, or an already-serialized payload string
                (used when replaying dead letters verbatim).

        Returns:
            Stream ID assigned by XADD.
        """
        raw = payload if isinstance(payload, str) else payload.to_json()
        entry_id = await self._redis.xadd(self._stream, {PAYLOAD_FIELD: raw})
        logger.debug("entry_appended", stream=self._stream, entry_id=entry_id)
        return entry_id

    async def publish_mention(
        self,
        user_id: str,
        message: str,
        event: dict[str, Any] | None,
    ) -> str:
        """Enqueue an ``app_mention`` for the workers.

        Raises:
            ValueError: If ``user_id`` or ``message`` is not a string.
        """
        payload = QueuePayload.for_mention(user_id, message, event)
        entry_id = await self.append(payload)
        logger.info(
            "mention_enqueued",
            unique_id=payload.unique_id,
            team=payload.team,
            channel=payload.channel,
            entry_id=entry_id,
        )
        return entry_id

    async def fetch(
        self,
        consumer: str,
        block_ms: int = 2000,
        count: int = 5,
    ) -> list[StreamEntry]:
        """Read up to ``count`` never-delivered entries for ``consumer``.

        Blocks up to ``block_ms`` milliseconds when nothing is waiting.
        Returned entries are pending for ``consumer`` until acknowledged.

        Returns:
            List of ``(entry_id, fields)`` pairs, possibly empty.
        """
        response = await self._redis.xreadgroup(
            groupname=self._group,
            consumername=consumer,
            streams={self._stream: ">"},
            count=count,
            block=block_ms,
        )
        entries: list[StreamEntry] = []
        for _stream_key, stream_entries in response or []:
            for entry_id, fields in stream_entries:
                entries.append((entry_id, fields or {}))
        return entries

    async def acknowledge(self, entry_id: str) -> None:
        """Retire an entry: XACK then XDEL in one MULTI/EXEC."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.xack(self._stream, self._group, entry_id)
            pipe.xdel(self._stream, entry_id)
            await pipe.execute()

    async def reclaim(
        self,
        consumer: str,
        min_idle_ms: int,
        count: int = 10,
    ) -> list[StreamEntry]:
        """Take over entries idle in the group's pending list.

        Scans the pending-entries list with XAUTOCLAIM from ``0-0`` and
        transfers up to ``count`` entries idle for at least ``min_idle_ms``
        to ``consumer``. Entries already removed from the stream come back
        without fields (or not at all) and are skipped; Redis drops them
        from the pending list.

        Returns:
            Reclaimed ``(entry_id, fields)`` pairs.
        """
        response = await self._redis.xautoclaim(
            self._stream,
            self._group,
            consumer,
            min_idle_time=min_idle_ms,
            start_id="0-0",
            count=count,
        )
        claimed: list[StreamEntry] = [
            (entry_id, fields) for entry_id, fields in response[1] if fields
        ]

        if claimed:
            logger.warning(
                "pending_entries_reclaimed",
                stream=self._stream,
                group=self._group,
                consumer=consumer,
                count=len(claimed),
            )
        return claimed

    async def pending_summary(self) -> dict[str, Any]:
        """Pending summary for the group (count, min/max IDs, per consumer)."""
        return await self._redis.xpending(self._stream, self._group)

    async def stream_info(self) -> dict[str, Any]:
        """Stream metadata for monitoring."""
        return await self._redis.xinfo_stream(self._stream)
