"""Pydantic schemas for the Slack ingress and debug endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SlackEnvelope(BaseModel):
    """Outer Events API envelope (``url_verification`` or ``event_callback``)."""

    model_config = ConfigDict(extra="allow")

    type: str
    challenge: str | None = None
    team_id: str | None = None
    event: dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    """Synchronous completion request for the debug endpoint."""

    message: str = Field(..., min_length=1, description="User message")
    team: str | None = Field(default=None, description="Workspace whose memory to use")
    channel: str | None = Field(default=None, description="Channel whose memory to use")


class ChatResponse(BaseModel):
    reply: str


class TurnView(BaseModel):
    role: str
    content: str
    id: int
    threadId: str | None = None


class MemoryView(BaseModel):
    """Stored turns of one conversation."""

    conversation: str
    turns: list[TurnView]
