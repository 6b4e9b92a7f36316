"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

import secrets
from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class DispatchMode(str, Enum):
    """How a fetched batch is handed to the processor."""

    concurrent = "concurrent"
    sequential = "sequential"


def _default_worker_name() -> str:
    return f"worker-{secrets.token_hex(3)}"


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Event log
    STREAM_NAME: str = "events:incoming"
    DLQ_STREAM_NAME: str = "events:dlq"
    CONSUMER_GROUP: str = "warpi-group"
    WORKER_NAME: str = Field(default_factory=_default_worker_name)
    FETCH_BLOCK_MS: int = 2000
    FETCH_COUNT: int = 5

    # Worker
    MAX_COMPLETION_CONCURRENCY: int = Field(default=4, ge=1)
    DISPATCH_MODE: DispatchMode = DispatchMode.concurrent
    RECLAIM_IDLE_MS: int = 120000  # 0 disables; must exceed 3 x LLM_TIMEOUT + 1.5s
    RECLAIM_INTERVAL_SECONDS: float = 30.0

    # Conversation memory
    MAX_TURNS: int = Field(default=5, ge=1)

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # LLM Providers
    OPENAI_API_KEY: str = ""
    LLM_MODEL: str = "openai/gpt-4o-mini"
    LLM_TIMEOUT: int = 30
    SYSTEM_PROMPT: str = "You are Warpi, a helpful Slack assistant."

    # Slack app (OAuth install)
    SLACK_CLIENT_ID: str = ""
    SLACK_CLIENT_SECRET: str = ""
    SLACK_REDIRECT_URI: str = ""

    # Monitoring
    SENTRY_DSN: str = ""

    @property
    def reclaim_enabled(self) -> bool:
        return self.RECLAIM_IDLE_MS > 0 and self.RECLAIM_INTERVAL_SECONDS > 0


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
