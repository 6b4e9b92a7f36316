"""Slack delivery and install-token exchange via slack_sdk.

``SlackMessenger`` builds an ``AsyncWebClient`` per workspace from the
token store and posts threaded replies. ``exchange_install_code`` runs the
OAuth v2 code exchange for the install callback.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from src.warpi.core.tenant import TenantTokenStore

logger = structlog.get_logger(__name__)


class DeliveryError(RuntimeError):
    """A reply could not be posted to Slack."""


class SlackMessenger:
    """Posts replies into the workspace the mention came from.

    Args:
        tokens: Team id -> bot token lookup.
        client_factory: Builds a client from a token. Defaults to
            ``AsyncWebClient(token=...)``.
    """

    def __init__(
        self,
        tokens: TenantTokenStore,
        client_factory: Callable[[str], AsyncWebClient] | None = None,
    ) -> None:
        self._tokens = tokens
        self._client_factory = client_factory or (lambda token: AsyncWebClient(token=token))

    async def client_for(self, team_id: str) -> AsyncWebClient:
        """Client authenticated as the bot of ``team_id``.

        Raises:
            DeliveryError: If the workspace has no stored token.
        """
        token = await self._tokens.get(team_id)
        if not token:
            raise DeliveryError(f"no Slack token stored for team {team_id}")
        return self._client_factory(token)

    async def post_reply(
        self,
        team_id: str,
        channel: str,
        text: str,
        thread_ts: str | None = None,
    ) -> str | None:
        """Post ``text`` to ``channel``, threaded under ``thread_ts``.

        Returns:
            The ``ts`` of the posted message.

        Raises:
            DeliveryError: Missing token or any Slack API failure.
        """
        client = await self.client_for(team_id)
        try:
            response = await client.chat_postMessage(
                channel=channel,
                thread_ts=thread_ts,
                text=text,
            )
        except SlackApiError as exc:
            error = exc.response.get("error") if exc.response is not None else str(exc)
            raise DeliveryError(f"chat.postMessage failed: {error}") from exc

        logger.info(
            "reply_posted",
            team=team_id,
            channel=channel,
            thread_ts=thread_ts,
        )
        return response.get("ts")


async def exchange_install_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str | None = None,
    client: AsyncWebClient | None = None,
) -> dict[str, Any]:
    """Exchange an OAuth authorization code for a bot token.

    Returns:
        Dict with ``team_id``, ``team_name`` and ``access_token``.

    Raises:
        SlackApiError: If Slack rejects the code.
        ValueError: If the response carries no team or token.
    """
    client = client or AsyncWebClient()
    response = await client.oauth_v2_access(
        client_id=client_id,
        client_secret=client_secret,
        code=code,
        redirect_uri=redirect_uri or None,
    )
    team = response.get("team") or {}
    access_token = response.get("access_token")
    if not team.get("id") or not access_token:
        raise ValueError("oauth.v2.access response is missing team id or access token")

    return {
        "team_id": team["id"],
        "team_name": team.get("name", ""),
        "access_token": access_token,
    }
