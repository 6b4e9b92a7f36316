"""Dead-letter log for entries that failed terminally.

Entries land here when their payload cannot be decoded, when the
completion call exhausts its attempts, or when the reply cannot be
delivered. Nothing consumes this stream automatically; ``list_entries`` and
``replay`` back the manual redrive tooling.

DLQ key: ``DLQ_STREAM_NAME`` (default ``events:dlq``)
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.warpi.core.monitoring import dead_letters_total
from src.warpi.events.bus import EventLog
from src.warpi.events.schemas import DeadLetterRecord

logger = structlog.get_logger(__name__)


class DeadLetterLog:
    """Append-only dead-letter stream.

    Args:
        redis: Async Redis client.
        stream: DLQ stream key.
    """

    def __init__(self, redis: aioredis.Redis, stream: str) -> None:
        self._redis = redis
        self._stream = stream

    @property
    def stream(self) -> str:
        return self._stream

    async def send(
        self,
        original_id: str,
        payload: str,
        reason: str | None = None,
        error: str | None = None,
    ) -> str:
        """Dead-letter an entry.

        Args:
            original_id: Stream ID of the entry in the main log.
            payload: The raw payload string exactly as it was read.
            reason: Short failure class ("completion failed", ...).
            error: Text of the last exception, if any.

        Returns:
            DLQ entry ID assigned by XADD.
        """
        record = DeadLetterRecord(
            original_id=original_id,
            payload=payload,
            reason=reason,
            error=error,
        )
        dlq_id = await self._redis.xadd(self._stream, record.to_stream_dict())
        dead_letters_total.labels(reason=reason or "unspecified").inc()

        logger.warning(
            "entry_dead_lettered",
            dlq_stream=self._stream,
            original_id=original_id,
            dlq_id=dlq_id,
            reason=reason,
            error=error,
        )
        return dlq_id

    async def list_entries(self, count: int = 50) -> list[tuple[str, DeadLetterRecord]]:
        """Oldest ``count`` dead letters as ``(dlq_id, record)`` pairs."""
        entries = await self._redis.xrange(self._stream, count=count)
        return [
            (dlq_id, DeadLetterRecord.from_stream_dict(fields))
            for dlq_id, fields in entries
        ]

    async def replay(self, dlq_id: str, target: EventLog) -> str:
        """Re-append a dead letter's payload to ``target`` and drop it here.

        The payload is re-appended verbatim, so a payload that was malformed
        will be dead-lettered again.

        Returns:
            New stream ID in ``target``.

        Raises:
            ValueError: If ``dlq_id`` is not in the DLQ.
        """
        entries = await self._redis.xrange(self._stream, min=dlq_id, max=dlq_id, count=1)
        if not entries:
            msg = f"DLQ entry '{dlq_id}' not found in {self._stream}"
            raise ValueError(msg)

        _id, fields = entries[0]
        record = DeadLetterRecord.from_stream_dict(fields)

        new_id = await target.append(record.payload)
        await self._redis.xdel(self._stream, dlq_id)

        logger.info(
            "dead_letter_replayed",
            dlq_id=dlq_id,
            original_id=record.original_id,
            new_entry_id=new_id,
            target_stream=target.stream,
        )
        return new_id
