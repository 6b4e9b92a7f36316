"""Slack Events API ingress and OAuth install callback.

Mentions are enqueued and acknowledged immediately; the worker does the
rest. Deletions are applied to conversation memory inline. Request
signatures are not verified here.
"""

from __future__ import annotations

import re

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from slack_sdk.errors import SlackApiError

from src.warpi.api.deps import get_event_log, get_memory, get_token_store
from src.warpi.config import get_settings
from src.warpi.context.memory import ConversationMemory, is_deletion_event
from src.warpi.core.tenant import TenantTokenStore
from src.warpi.events.bus import EventLog
from src.warpi.schemas.slack import SlackEnvelope
from src.warpi.services.slack import exchange_install_code

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])

_BOT_MENTION = re.compile(r"<@[^>]+>\s*")


def strip_mention(text: str) -> str:
    """Remove the leading bot mention from a message."""
    return _BOT_MENTION.sub("", text or "", count=1).strip()


@router.post("/events")
async def slack_events(
    envelope: SlackEnvelope,
    log: EventLog = Depends(get_event_log),
    memory: ConversationMemory = Depends(get_memory),
):
    """Receive an Events API callback.

    - ``url_verification``: echo the challenge.
    - ``app_mention``: enqueue for the worker.
    - ``message`` deletion or tombstone: forget the thread's turns.
    Everything else is acknowledged and ignored.
    """
    if envelope.type == "url_verification":
        return {"challenge": envelope.challenge}

    event = envelope.event
    event_type = event.get("type")

    if event_type == "app_mention":
        event = {**event, "team": event.get("team") or envelope.team_id}
        try:
            await log.publish_mention(event.get("user"), strip_mention(event.get("text", "")), event)
        except ValueError as exc:
            logger.warning("mention_rejected", error=str(exc), channel=event.get("channel"))

    elif event_type == "message" and is_deletion_event(event):
        event = {**event, "team_id": event.get("team_id") or envelope.team_id}
        removed = await memory.handle_deletion_event(event)
        logger.info("deletion_applied", channel=event.get("channel"), removed=removed)

    return {"ok": True}


@router.get("/oauth/callback")
async def oauth_callback(
    code: str = Query(..., min_length=1),
    tokens: TenantTokenStore = Depends(get_token_store),
):
    """Exchange the install code and store the workspace's bot token."""
    settings = get_settings()
    try:
        installation = await exchange_install_code(
            code=code,
            client_id=settings.SLACK_CLIENT_ID,
            client_secret=settings.SLACK_CLIENT_SECRET,
            redirect_uri=settings.SLACK_REDIRECT_URI,
        )
    except (SlackApiError, ValueError) as exc:
        logger.warning("oauth_exchange_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Slack installation failed",
        ) from exc

    await tokens.save(installation["team_id"], installation["access_token"])
    logger.info("workspace_installed", team=installation["team_id"])
    return {
        "ok": True,
        "team_id": installation["team_id"],
        "team_name": installation["team_name"],
    }
