"""Durable mention pipeline on Redis Streams.

Provides the mention event log with consumer-group delivery, the
per-entry processor, the polling consumer with reclaim sweep, and the
dead-letter log.

Exports:
    QueuePayload: Wire model of one queued mention.
    DeadLetterRecord: Wire model of one dead-lettered entry.
    MalformedPayloadError: Raised when a payload cannot be decoded.
    EventLog: Append/fetch/acknowledge on the mention stream.
    DeadLetterLog: Append-only DLQ with list and replay.
    MentionProcessor: Drives one entry to a terminal outcome.
    EventConsumer: Poll loop, batch dispatch and reclaim sweep.
"""

from __future__ import annotations

from src.warpi.events.schemas import DeadLetterRecord, MalformedPayloadError, QueuePayload

__all__ = [
    "DeadLetterLog",
    "DeadLetterRecord",
    "EventConsumer",
    "EventLog",
    "MalformedPayloadError",
    "MentionProcessor",
    "QueuePayload",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the Redis-backed classes to avoid circular imports."""
    if name == "EventLog":
        from src.warpi.events.bus import EventLog

        return EventLog
    if name == "DeadLetterLog":
        from src.warpi.events.dlq import DeadLetterLog

        return DeadLetterLog
    if name == "MentionProcessor":
        from src.warpi.events.processor import MentionProcessor

        return MentionProcessor
    if name == "EventConsumer":
        from src.warpi.events.consumer import EventConsumer

        return EventConsumer
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
