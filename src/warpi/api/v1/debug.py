"""Debug endpoints: inspect conversation memory, chat without the queue.

Convenience only; nothing here takes part in the queue's delivery
guarantees.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from src.warpi.api.deps import get_completion_client, get_memory
from src.warpi.config import get_settings
from src.warpi.context.memory import ConversationMemory, Turn, conversation_key
from src.warpi.schemas.slack import ChatRequest, ChatResponse, MemoryView, TurnView
from src.warpi.services.llm import CompletionClient

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["debug"])

FALLBACK_REPLY = "Sorry, I ran into an error while trying to respond."


@router.get("/memory/{team}/{channel}", response_model=MemoryView)
async def read_memory(
    team: str,
    channel: str,
    memory: ConversationMemory = Depends(get_memory),
):
    """Stored turns for one workspace channel, oldest first."""
    key = conversation_key(team, channel)
    turns = await memory.read(key)
    return MemoryView(
        conversation=key,
        turns=[TurnView(**turn.model_dump(by_alias=True)) for turn in turns],
    )


@router.delete("/memory/{team}/{channel}")
async def clear_memory(
    team: str,
    channel: str,
    memory: ConversationMemory = Depends(get_memory),
):
    """Forget one workspace channel's turns."""
    cleared = await memory.clear(conversation_key(team, channel))
    return {"cleared": cleared}


@router.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    llm: CompletionClient = Depends(get_completion_client),
    memory: ConversationMemory = Depends(get_memory),
):
    """One synchronous completion, optionally seeded with stored turns.

    Errors are answered with a fixed apology instead of an error status.
    """
    history: list[Turn] = []
    if body.team and body.channel:
        history = await memory.read(conversation_key(body.team, body.channel))

    messages = [
        {"role": "system", "content": get_settings().SYSTEM_PROMPT},
        *(turn.to_message() for turn in history),
        {"role": "user", "content": body.message},
    ]

    try:
        reply = await llm.complete(messages)
    except Exception as exc:
        logger.error("debug_chat_failed", error=str(exc))
        reply = FALLBACK_REPLY

    return ChatResponse(reply=reply)
