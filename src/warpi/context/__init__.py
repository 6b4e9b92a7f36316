"""Conversation memory: bounded per-channel turn history in Redis."""

from __future__ import annotations

from src.warpi.context.memory import ConversationMemory, Turn, conversation_key

__all__ = ["ConversationMemory", "Turn", "conversation_key"]
