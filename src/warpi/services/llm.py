"""Completion client via LiteLLM Router.

Wraps a single-model LiteLLM Router behind ``complete(messages) -> str``.
The router does not retry on its own (``num_retries=0``); the worker owns
the retry policy so attempts, backoff and dead-lettering stay in one place.
"""

from __future__ import annotations

import structlog
from litellm import Router

from src.warpi.config import Settings, get_settings

logger = structlog.get_logger(__name__)

MODEL_GROUP = "reply"


class EmptyCompletionError(RuntimeError):
    """The provider answered but the answer had no text."""


class CompletionClient:
    """Text completion through LiteLLM.

    Args:
        settings: Application settings. Uses get_settings() if None.
        router: Pre-built router (tests inject a mock here).
    """

    def __init__(self, settings: Settings | None = None, router: Router | None = None) -> None:
        settings = settings or get_settings()
        self.model = settings.LLM_MODEL

        if router is not None:
            self.router = router
            return

        if not settings.OPENAI_API_KEY:
            logger.warning("llm_unconfigured", reason="OPENAI_API_KEY is empty")
            self.router = None
            return

        self.router = Router(
            model_list=[
                {
                    "model_name": MODEL_GROUP,
                    "litellm_params": {
                        "model": settings.LLM_MODEL,
                        "api_key": settings.OPENAI_API_KEY,
                    },
                },
            ],
            num_retries=0,
            timeout=settings.LLM_TIMEOUT,
        )

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Run one completion and return the stripped answer text.

        Args:
            messages: Chat messages with 'role' and 'content'.

        Raises:
            RuntimeError: If no API key is configured.
            EmptyCompletionError: If the model returned no text.
            Exception: Provider errors propagate unchanged.
        """
        if not self.router:
            raise RuntimeError("No LLM API key configured")

        response = await self.router.acompletion(model=MODEL_GROUP, messages=messages)

        content = None
        if response.choices:
            content = response.choices[0].message.content
        answer = (content or "").strip()
        if not answer:
            raise EmptyCompletionError("completion returned no content")

        usage = getattr(response, "usage", None)
        logger.debug(
            "completion_received",
            model=getattr(response, "model", self.model),
            total_tokens=getattr(usage, "total_tokens", None),
        )
        return answer
