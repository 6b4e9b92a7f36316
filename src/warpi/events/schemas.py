"""Wire schemas for the mention stream and its dead-letter stream.

A stream entry carries a single ``payload`` field holding the JSON
document below. Field names on the wire are camelCase where the
producer has always written them that way (``userId``, ``uniqueId``);
the models expose snake_case attributes and serialize by alias.

    {"event": {"channel", "ts", "text"},
     "body": {"userId", "message", "team", "channel", "thread_ts"},
     "uniqueId": "...", "added": 1}
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

PAYLOAD_FIELD = "payload"


class MalformedPayloadError(ValueError):
    """A stream entry whose payload cannot be decoded into a QueuePayload."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(reason)
        self.raw = raw


class MentionEvent(BaseModel):
    """The Slack event fields the worker needs to reply in place."""

    model_config = ConfigDict(extra="allow")

    channel: str = "unknown"
    ts: str = ""
    text: str = ""
    thread_ts: str | None = None


class MentionBody(BaseModel):
    """Producer-normalized view of the mention."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    user_id: str = Field(alias="userId")
    message: str = ""
    team: str = "unknown"
    channel: str | None = None
    thread_ts: str | None = None


class QueuePayload(BaseModel):
    """One unit of work on the mention stream.

    Attributes:
        event: Channel, timestamp and text of the originating message.
        body: User, tenant and threading information.
        unique_id: Client-generated identifier (``{userId}-{epoch ms}``).
        added: ``0`` marks a tombstone that is acknowledged unprocessed.
    """

    model_config = ConfigDict(populate_by_name=True)

    event: MentionEvent
    body: MentionBody
    unique_id: str = Field(default="", alias="uniqueId")
    added: int = 1

    @property
    def is_tombstone(self) -> bool:
        return self.added == 0

    @property
    def team(self) -> str:
        return self.body.team

    @property
    def channel(self) -> str:
        return self.body.channel or self.event.channel

    @property
    def prompt_text(self) -> str:
        """Text sent to the model as the new user message."""
        return self.event.text or self.body.message or ""

    @property
    def reply_thread_ts(self) -> str | None:
        """Thread the reply is posted under; a top-level mention starts one."""
        return self.body.thread_ts or self.event.thread_ts or self.event.ts or None

    def to_json(self) -> str:
        exclude = {"event": {"thread_ts"}} if self.event.thread_ts is None else None
        return self.model_dump_json(by_alias=True, exclude=exclude)

    @classmethod
    def from_json(cls, raw: str | None) -> QueuePayload:
        """Decode a raw ``payload`` field.

        Raises:
            MalformedPayloadError: If the value is missing, is not JSON, or
                does not match the schema.
        """
        if raw is None:
            raise MalformedPayloadError("", "entry has no payload field")
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedPayloadError(raw, f"invalid JSON: {exc}") from exc
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise MalformedPayloadError(raw, f"schema mismatch: {exc}") from exc

    @classmethod
    def for_mention(
        cls,
        user_id: str,
        message: str,
        event: dict[str, Any] | None,
    ) -> QueuePayload:
        """Build the payload the ingress enqueues for an ``app_mention``.

        Args:
            user_id: Slack user who mentioned the bot.
            message: Mention text with the bot mention stripped.
            event: The raw Slack event (channel, ts, team, thread_ts).

        Raises:
            ValueError: If ``user_id`` or ``message`` is not a string.
        """
        if not isinstance(user_id, str) or not isinstance(message, str):
            raise ValueError("Invalid userId or message type")

        event = event or {}
        now_ms = int(time.time() * 1000)
        channel = event.get("channel") or "unknown"
        team = (
            event.get("team")
            or (event.get("bot_profile") or {}).get("team_id")
            or "unknown"
        )

        return cls(
            event=MentionEvent(
                channel=channel,
                ts=event.get("ts") or str(now_ms),
                text=message,
            ),
            body=MentionBody(
                user_id=user_id,
                message=message,
                team=team,
                channel=channel,
                thread_ts=event.get("thread_ts"),
            ),
            unique_id=f"{user_id}-{now_ms}",
            added=1,
        )


class DeadLetterRecord(BaseModel):
    """A dead-lettered entry, self-contained for manual replay.

    ``payload`` is always the original raw payload string, byte for byte,
    so replay is a plain re-append to the main stream.
    """

    original_id: str
    payload: str
    reason: str | None = None
    error: str | None = None
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_stream_dict(self) -> dict[str, str]:
        """Flatten to string fields for XADD; absent optionals are omitted."""
        data = {
            "original_id": self.original_id,
            "payload": self.payload,
            "failed_at": self.failed_at.isoformat(),
        }
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DeadLetterRecord:
        failed_at = raw.get("failed_at")
        return cls(
            original_id=raw["original_id"],
            payload=raw.get("payload", ""),
            reason=raw.get("reason") or None,
            error=raw.get("error") or None,
            failed_at=(
                datetime.fromisoformat(failed_at)
                if failed_at
                else datetime.now(timezone.utc)
            ),
        )
