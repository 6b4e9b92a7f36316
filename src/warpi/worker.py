"""Worker process entry point.

Opens the Redis connection, wires the pipeline components together and
runs one consumer until SIGINT/SIGTERM. On a signal the loop is stopped,
the current task is cancelled and the connection is closed; entries in
flight are not drained and stay pending until a reclaim sweep picks them
up.

Run with ``python -m src.warpi.worker`` or the ``warpi-worker`` script.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import redis.asyncio as aioredis
import structlog

from src.warpi.api.middleware.logging import configure_structlog
from src.warpi.config import Settings, get_settings
from src.warpi.context.memory import ConversationMemory
from src.warpi.core.monitoring import init_sentry
from src.warpi.core.redis import RedisConnection
from src.warpi.core.tenant import TenantTokenStore
from src.warpi.events.bus import EventLog
from src.warpi.events.consumer import EventConsumer
from src.warpi.events.dlq import DeadLetterLog
from src.warpi.events.processor import MentionProcessor, max_completion_seconds
from src.warpi.services.llm import CompletionClient
from src.warpi.services.slack import SlackMessenger

logger = structlog.get_logger(__name__)


def build_consumer(redis: aioredis.Redis, settings: Settings) -> EventConsumer:
    """Wire log, DLQ, memory, tokens, LLM and Slack into a consumer.

    Raises:
        ValueError: If the reclaim sweep could take over an entry whose
            completion retry loop is still running on another worker.
    """
    if settings.reclaim_enabled:
        busiest_ms = max_completion_seconds(settings.LLM_TIMEOUT) * 1000
        if settings.RECLAIM_IDLE_MS <= busiest_ms:
            msg = (
                f"RECLAIM_IDLE_MS={settings.RECLAIM_IDLE_MS} must exceed the longest "
                f"completion retry loop ({busiest_ms:.0f} ms with LLM_TIMEOUT="
                f"{settings.LLM_TIMEOUT})"
            )
            raise ValueError(msg)

    log = EventLog(redis, settings.STREAM_NAME, settings.CONSUMER_GROUP)
    processor = MentionProcessor(
        log=log,
        dlq=DeadLetterLog(redis, settings.DLQ_STREAM_NAME),
        memory=ConversationMemory(redis, max_turns=settings.MAX_TURNS),
        llm=CompletionClient(settings),
        messenger=SlackMessenger(TenantTokenStore(redis)),
        system_prompt=settings.SYSTEM_PROMPT,
        max_concurrency=settings.MAX_COMPLETION_CONCURRENCY,
    )
    return EventConsumer(
        log=log,
        processor=processor,
        consumer_name=settings.WORKER_NAME,
        block_ms=settings.FETCH_BLOCK_MS,
        count=settings.FETCH_COUNT,
        dispatch_mode=settings.DISPATCH_MODE,
        max_in_flight=settings.MAX_COMPLETION_CONCURRENCY,
        reclaim_idle_ms=settings.RECLAIM_IDLE_MS if settings.reclaim_enabled else 0,
        reclaim_interval=settings.RECLAIM_INTERVAL_SECONDS,
    )


async def run_worker(settings: Settings | None = None) -> None:
    """Run one consumer until a termination signal arrives."""
    settings = settings or get_settings()

    connection = RedisConnection(settings.REDIS_URL)
    await connection.open()
    try:
        consumer = build_consumer(connection.client, settings)

        loop = asyncio.get_running_loop()
        main_task = asyncio.current_task()

        def _shutdown(sig: signal.Signals) -> None:
            logger.info("worker_signal_received", signal=sig.name)
            consumer.stop()
            if main_task is not None:
                main_task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _shutdown, sig)

        logger.info("worker_started", consumer=settings.WORKER_NAME)
        await consumer.run()
    except asyncio.CancelledError:
        logger.info("worker_cancelled", consumer=settings.WORKER_NAME)
    finally:
        await connection.close()


def main() -> None:
    settings = get_settings()
    configure_structlog("worker")
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    try:
        asyncio.run(run_worker(settings))
    except Exception:
        logger.exception("worker_crashed")
        sys.exit(1)


if __name__ == "__main__":
    main()
