"""Per-conversation short-term memory in Redis lists.

Each conversation (one Slack channel in one workspace) keeps its most
recent turns in a Redis list, oldest first. Every append is followed by
an LTRIM so the list never holds more than ``max_turns`` messages; the
bound counts messages, not user/assistant exchanges.

Key pattern: ``thread:MEMORY:team-{team}:channel-{channel}:threads``

Turns also record the Slack thread they belong to (``threadId``). That
field is only used to forget turns when the originating message is
deleted; storage is not partitioned by thread.
"""

from __future__ import annotations

import json
import time
from typing import Any, Literal

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger(__name__)

MEMORY_PREFIX = "thread:MEMORY:"

DELETION_SUBTYPE = "message_deleted"
EDIT_SUBTYPE = "message_changed"
TOMBSTONE_SUBTYPE = "tombstone"


def conversation_key(team: str, channel: str) -> str:
    """Conversation key for a workspace + channel pair."""
    return f"team-{team}:channel-{channel}:threads"


def is_deletion_event(event: dict[str, Any]) -> bool:
    """True for a deleted message or an edit that tombstoned it."""
    subtype = event.get("subtype")
    if subtype == DELETION_SUBTYPE:
        return True
    return (
        subtype == EDIT_SUBTYPE
        and (event.get("message") or {}).get("subtype") == TOMBSTONE_SUBTYPE
    )


class Turn(BaseModel):
    """One stored message.

    Serialized as ``{"role", "content", "id", "threadId"}``; ``id`` is the
    creation time in epoch milliseconds.
    """

    model_config = ConfigDict(populate_by_name=True)

    role: Literal["user", "assistant"]
    content: str
    id: int = Field(default_factory=lambda: int(time.time() * 1000))
    thread_id: str | None = Field(default=None, alias="threadId")

    def to_message(self) -> dict[str, str]:
        """Chat-completion message form."""
        return {"role": self.role, "content": self.content}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> Turn:
        return cls.model_validate_json(raw)


class ConversationMemory:
    """Bounded turn history keyed by conversation.

    There is no locking: concurrent appends to the same conversation may
    interleave, and a reader between the user-turn and assistant-turn
    appends sees only the user turn.

    Args:
        redis: Async Redis client (``decode_responses=True``).
        max_turns: Messages retained per conversation.
    """

    def __init__(self, redis: aioredis.Redis, max_turns: int = 5) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self._redis = redis
        self._max_turns = max_turns

    @property
    def max_turns(self) -> int:
        return self._max_turns

    @staticmethod
    def _list_key(key: str) -> str:
        return f"{MEMORY_PREFIX}{key}"

    async def append(
        self,
        key: str,
        role: Literal["user", "assistant"],
        content: str,
        thread_id: str | None = None,
    ) -> Turn:
        """Push a turn to the tail and trim to the last ``max_turns``."""
        turn = Turn(role=role, content=content, thread_id=thread_id)
        list_key = self._list_key(key)

        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.rpush(list_key, turn.to_json())
            pipe.ltrim(list_key, -self._max_turns, -1)
            await pipe.execute()

        return turn

    async def read(self, key: str) -> list[Turn]:
        """All stored turns for ``key``, oldest first."""
        raw_items = await self._redis.lrange(self._list_key(key), 0, -1)
        turns: list[Turn] = []
        for raw in raw_items:
            try:
                turns.append(Turn.from_json(raw))
            except ValidationError:
                logger.warning("memory_item_unreadable", conversation=key, raw=raw[:200])
        return turns

    async def clear(self, key: str) -> bool:
        """Forget a conversation. Returns True if anything was stored."""
        return bool(await self._redis.delete(self._list_key(key)))

    async def remove_thread(self, key: str, thread_id: str | None) -> int:
        """Drop every turn whose ``threadId`` equals ``thread_id``.

        Matching is by the turn's thread id, not its serialized text, so two
        turns with identical content are told apart. The list is rewritten
        under WATCH/MULTI; a concurrent writer causes a retry. Items that
        do not parse are kept as they are.

        Returns:
            Number of turns removed.
        """
        list_key = self._list_key(key)

        async def _rewrite(pipe: aioredis.client.Pipeline) -> int:
            raw_items = await pipe.lrange(list_key, 0, -1)
            kept: list[str] = []
            removed = 0
            for raw in raw_items:
                try:
                    matches = json.loads(raw).get("threadId") == thread_id
                except (TypeError, ValueError, AttributeError):
                    matches = False
                if matches:
                    removed += 1
                else:
                    kept.append(raw)

            pipe.multi()
            if removed:
                pipe.delete(list_key)
                if kept:
                    pipe.rpush(list_key, *kept)
            return removed

        removed = await self._redis.transaction(
            _rewrite, list_key, value_from_callable=True,
        )
        logger.info(
            "memory_thread_removed",
            conversation=key,
            thread_id=thread_id,
            removed=removed,
        )
        return removed

    async def handle_deletion_event(self, event: dict[str, Any]) -> int:
        """Forget the turns of a deleted or tombstoned Slack message.

        Args:
            event: Slack ``message`` event (``message_deleted`` or a
                ``message_changed`` whose message is a tombstone).

        Returns:
            Number of turns removed; 0 for events that are not deletions.
        """
        if not is_deletion_event(event):
            return 0

        team = event.get("team_id") or event.get("team")
        key = conversation_key(team, event.get("channel"))
        thread_ts = event.get("thread_ts")
        if thread_ts is None:
            thread_ts = (event.get("previous_message") or {}).get("thread_ts")

        logger.info("deletion_event_received", conversation=key, thread_ts=thread_ts)
        if thread_ts is None:
            # Turns without a thread are never matched by a deletion.
            return 0
        return await self.remove_thread(key, thread_ts)
