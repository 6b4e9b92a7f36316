"""Per-entry mention handling: decode, complete, deliver, remember, retire.

Every entry reaches exactly one terminal outcome, and every outcome ends
with the entry acknowledged and deleted from the stream:

- malformed payload      -> dead letter ("malformed payload")
- tombstone (added == 0) -> skipped
- completion exhausted   -> dead letter ("completion failed")
- delivery error         -> dead letter ("delivery failed"), answer dropped
- anything unexpected    -> dead letter ("unexpected error")
- success                -> reply posted, turns stored

A memory read failure degrades to an empty history and a memory write
failure is only logged. If the dead-letter write itself fails the entry
is left pending so the reclaim sweep can try it again.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    stop_after_attempt,
    wait_incrementing,
)

from src.warpi.context.memory import ConversationMemory, Turn, conversation_key
from src.warpi.core.monitoring import entries_in_flight, entries_total, track_completion
from src.warpi.events.bus import EventLog
from src.warpi.events.dlq import DeadLetterLog
from src.warpi.events.schemas import PAYLOAD_FIELD, MalformedPayloadError, QueuePayload
from src.warpi.services.llm import CompletionClient
from src.warpi.services.slack import SlackMessenger

logger = structlog.get_logger(__name__)

COMPLETION_ATTEMPTS = 3
COMPLETION_BACKOFF_SECONDS = 0.5

REASON_MALFORMED = "malformed payload"
REASON_COMPLETION_FAILED = "completion failed"
REASON_DELIVERY_FAILED = "delivery failed"
REASON_UNEXPECTED = "unexpected error"


def max_completion_seconds(llm_timeout: float) -> float:
    """Longest one entry can spend in the completion retry loop."""
    waits = sum(COMPLETION_BACKOFF_SECONDS * n for n in range(1, COMPLETION_ATTEMPTS))
    return COMPLETION_ATTEMPTS * llm_timeout + waits


class EntryOutcome(str, Enum):
    """Terminal state of one stream entry."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    MALFORMED = "malformed"
    COMPLETION_FAILED = "completion_failed"
    DELIVERY_FAILED = "delivery_failed"
    UNEXPECTED_ERROR = "unexpected_error"
    LEFT_PENDING = "left_pending"


class MentionProcessor:
    """Runs one stream entry through the mention pipeline.

    Args:
        log: Stream the entries came from (used to retire them).
        dlq: Dead-letter stream.
        memory: Conversation memory store.
        llm: Completion client.
        messenger: Slack delivery.
        system_prompt: Preamble placed before the history.
        max_concurrency: Completion calls allowed in flight at once.
        sleep: Awaitable sleep used between completion attempts.
    """

    def __init__(
        self,
        log: EventLog,
        dlq: DeadLetterLog,
        memory: ConversationMemory,
        llm: CompletionClient,
        messenger: SlackMessenger,
        system_prompt: str,
        max_concurrency: int = 4,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._log = log
        self._dlq = dlq
        self._memory = memory
        self._llm = llm
        self._messenger = messenger
        self._system_prompt = system_prompt
        self._gate = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep

    async def process(self, entry_id: str, fields: dict[str, str]) -> EntryOutcome:
        """Handle one entry to a terminal outcome, then retire it.

        Never raises for processing failures; cancellation propagates.
        """
        raw = fields.get(PAYLOAD_FIELD)
        log = logger.bind(entry_id=entry_id)
        log.info("entry_processing_started")

        entries_in_flight.inc()
        try:
            outcome = await self._handle(entry_id, raw, fields, log)
        except Exception as exc:
            log.exception("entry_processing_crashed")
            outcome = await self._dead_letter(
                entry_id,
                raw if raw is not None else json.dumps(fields),
                REASON_UNEXPECTED,
                exc,
                EntryOutcome.UNEXPECTED_ERROR,
            )
        finally:
            entries_in_flight.dec()

        if outcome is not EntryOutcome.LEFT_PENDING:
            await self._retire(entry_id)

        entries_total.labels(outcome=outcome.value).inc()
        log.info("entry_processing_finished", outcome=outcome.value)
        return outcome

    def build_messages(self, history: list[Turn], text: str) -> list[dict[str, str]]:
        """System preamble, stored turns oldest first, then the new message."""
        return [
            {"role": "system", "content": self._system_prompt},
            *(turn.to_message() for turn in history),
            {"role": "user", "content": text},
        ]

    async def _handle(
        self,
        entry_id: str,
        raw: str | None,
        fields: dict[str, str],
        log: structlog.stdlib.BoundLogger,
    ) -> EntryOutcome:
        try:
            payload = QueuePayload.from_json(raw)
        except MalformedPayloadError as exc:
            log.error("entry_payload_malformed", error=str(exc))
            return await self._dead_letter(
                entry_id,
                raw if raw is not None else json.dumps(fields),
                REASON_MALFORMED,
                exc,
                EntryOutcome.MALFORMED,
            )

        if payload.is_tombstone:
            log.info("entry_tombstone_skipped", unique_id=payload.unique_id)
            return EntryOutcome.SKIPPED

        key = conversation_key(payload.team, payload.channel)
        log = log.bind(conversation=key, unique_id=payload.unique_id)

        history = await self._load_history(key, log)
        messages = self.build_messages(history, payload.prompt_text)

        try:
            answer = await self._complete(messages, log)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            log.error("completion_exhausted", error=str(last_error))
            return await self._dead_letter(
                entry_id, raw, REASON_COMPLETION_FAILED, last_error,
                EntryOutcome.COMPLETION_FAILED,
            )

        try:
            await self._messenger.post_reply(
                team_id=payload.team,
                channel=payload.event.channel,
                text=answer,
                thread_ts=payload.reply_thread_ts,
            )
        except Exception as exc:
            log.error("delivery_failed", error=str(exc))
            return await self._dead_letter(
                entry_id, raw, REASON_DELIVERY_FAILED, exc, EntryOutcome.DELIVERY_FAILED,
            )

        await self._remember(key, payload, answer, log)
        return EntryOutcome.COMPLETED

    async def _load_history(
        self,
        key: str,
        log: structlog.stdlib.BoundLogger,
    ) -> list[Turn]:
        try:
            return await self._memory.read(key)
        except Exception as exc:
            log.warning("memory_read_failed", error=str(exc))
            return []

    async def _complete(
        self,
        messages: list[dict[str, str]],
        log: structlog.stdlib.BoundLogger,
    ) -> str:
        """Completion with linear backoff, inside the concurrency gate.

        Raises:
            RetryError: After COMPLETION_ATTEMPTS failed attempts.
        """

        def _before_sleep(state: RetryCallState) -> None:
            log.warning(
                "completion_attempt_failed",
                attempt=state.attempt_number,
                retry_in=state.next_action.sleep if state.next_action else None,
                error=str(state.outcome.exception()) if state.outcome else None,
            )

        # Waits 0.5s then 1.0s between attempts. There is no 1.5s wait after
        # the third failure: the entry goes straight to the dead-letter stream.
        retrying = AsyncRetrying(
            stop=stop_after_attempt(COMPLETION_ATTEMPTS),
            wait=wait_incrementing(
                start=COMPLETION_BACKOFF_SECONDS,
                increment=COMPLETION_BACKOFF_SECONDS,
            ),
            sleep=self._sleep,
            before_sleep=_before_sleep,
        )

        async with self._gate:
            async for attempt in retrying:
                with attempt:
                    async with track_completion():
                        answer = await self._llm.complete(messages)
        return answer

    async def _remember(
        self,
        key: str,
        payload: QueuePayload,
        answer: str,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        thread_id = payload.reply_thread_ts
        try:
            await self._memory.append(key, "user", payload.prompt_text, thread_id)
            await self._memory.append(key, "assistant", answer, thread_id)
        except Exception as exc:
            log.warning("memory_write_failed", error=str(exc))

    async def _dead_letter(
        self,
        entry_id: str,
        payload: str,
        reason: str,
        error: BaseException | None,
        outcome: EntryOutcome,
    ) -> EntryOutcome:
        try:
            await self._dlq.send(
                original_id=entry_id,
                payload=payload,
                reason=reason,
                error=str(error) if error is not None else None,
            )
        except Exception:
            logger.exception("dead_letter_write_failed", entry_id=entry_id, reason=reason)
            return EntryOutcome.LEFT_PENDING
        return outcome

    async def _retire(self, entry_id: str) -> None:
        try:
            await self._log.acknowledge(entry_id)
        except Exception:
            logger.exception("entry_acknowledge_failed", entry_id=entry_id)
