"""Tests for MentionProcessor: every entry reaches one terminal outcome.

Covers:
- Successful mention: prompt assembly, threaded reply, two turns stored, ack
- Malformed payloads dead-lettered verbatim
- Completion retries with linear backoff, then dead letter
- Delivery failure, tombstones, memory read/write failures
- DLQ write failure leaves the entry pending
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, call, patch

import pytest

from src.warpi.context.memory import ConversationMemory, Turn
from src.warpi.events.processor import (
    REASON_COMPLETION_FAILED,
    REASON_DELIVERY_FAILED,
    REASON_MALFORMED,
    REASON_UNEXPECTED,
    EntryOutcome,
    MentionProcessor,
    max_completion_seconds,
)
from src.warpi.services.slack import DeliveryError

SYSTEM_PROMPT = "You are Warpi, a helpful Slack assistant."
CONVERSATION = "team-T1:channel-C1:threads"


@pytest.fixture
def log():
    log = AsyncMock()
    log.acknowledge = AsyncMock()
    return log


@pytest.fixture
def dlq():
    dlq = AsyncMock()
    dlq.send = AsyncMock(return_value="dlq-1")
    return dlq


@pytest.fixture
def llm():
    llm = AsyncMock()
    llm.complete = AsyncMock(return_value="Hi there!")
    return llm


@pytest.fixture
def messenger():
    messenger = AsyncMock()
    messenger.post_reply = AsyncMock(return_value="200.1")
    return messenger


@pytest.fixture
def memory(list_redis):
    return ConversationMemory(list_redis, max_turns=5)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def processor(log, dlq, memory, llm, messenger, sleep):
    return MentionProcessor(
        log=log,
        dlq=dlq,
        memory=memory,
        llm=llm,
        messenger=messenger,
        system_prompt=SYSTEM_PROMPT,
        max_concurrency=2,
        sleep=sleep,
    )


class TestSuccessfulMention:
    async def test_hello_reply_is_posted_remembered_and_acked(
        self, processor, log, dlq, llm, messenger, list_redis, mention_fields,
    ):
        outcome = await processor.process("1-0", mention_fields)

        assert outcome is EntryOutcome.COMPLETED
        llm.complete.assert_awaited_once_with([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "hello"},
        ])
        messenger.post_reply.assert_awaited_once_with(
            team_id="T1", channel="C1", text="Hi there!", thread_ts="100",
        )

        turns = list_redis.turns(CONVERSATION)
        assert [(t["role"], t["content"]) for t in turns] == [
            ("user", "hello"),
            ("assistant", "Hi there!"),
        ]
        assert all(t["threadId"] == "100" for t in turns)

        log.acknowledge.assert_awaited_once_with("1-0")
        dlq.send.assert_not_called()

    async def test_history_precedes_new_message(
        self, processor, memory, llm, make_payload,
    ):
        await memory.append(CONVERSATION, "user", "earlier question", "90")
        await memory.append(CONVERSATION, "assistant", "earlier answer", "90")
        fields = {"payload": json.dumps(make_payload())}

        await processor.process("2-0", fields)

        messages = llm.complete.call_args[0][0]
        assert messages == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "earlier question"},
            {"role": "assistant", "content": "earlier answer"},
            {"role": "user", "content": "hello"},
        ]

    async def test_reply_threads_under_existing_thread(
        self, processor, messenger, make_payload,
    ):
        data = make_payload()
        data["body"]["thread_ts"] = "42.0"

        await processor.process("3-0", {"payload": json.dumps(data)})

        assert messenger.post_reply.call_args.kwargs["thread_ts"] == "42.0"

    async def test_memory_stays_bounded(self, processor, list_redis, mention_fields):
        for n in range(4):
            await processor.process(f"{n}-0", mention_fields)

        assert len(list_redis.turns(CONVERSATION)) == 5


class TestMalformedPayload:
    async def test_non_json_dead_lettered_verbatim_and_acked(self, processor, log, dlq, llm):
        outcome = await processor.process("5-0", {"payload": "not json"})

        assert outcome is EntryOutcome.MALFORMED
        kwargs = dlq.send.call_args.kwargs
        assert kwargs["original_id"] == "5-0"
        assert kwargs["payload"] == "not json"
        assert kwargs["reason"] == REASON_MALFORMED
        log.acknowledge.assert_awaited_once_with("5-0")
        llm.complete.assert_not_called()

    async def test_missing_payload_field_keeps_entry_fields(self, processor, dlq):
        outcome = await processor.process("6-0", {"other": "x"})

        assert outcome is EntryOutcome.MALFORMED
        assert json.loads(dlq.send.call_args.kwargs["payload"]) == {"other": "x"}


class TestCompletionRetries:
    async def test_transient_failure_then_success(self, processor, llm, sleep, log, mention_fields):
        llm.complete = AsyncMock(side_effect=[TimeoutError("slow"), "Recovered"])

        outcome = await processor.process("7-0", mention_fields)

        assert outcome is EntryOutcome.COMPLETED
        assert llm.complete.await_count == 2
        sleep.assert_awaited_once_with(0.5)
        log.acknowledge.assert_awaited_once_with("7-0")

    async def test_three_failures_dead_letter(
        self, processor, llm, sleep, dlq, log, messenger, list_redis, mention_fields,
    ):
        llm.complete = AsyncMock(side_effect=RuntimeError("provider down"))

        outcome = await processor.process("8-0", mention_fields)

        assert outcome is EntryOutcome.COMPLETION_FAILED
        assert llm.complete.await_count == 3
        assert sleep.await_args_list == [call(0.5), call(1.0)]

        kwargs = dlq.send.call_args.kwargs
        assert kwargs["original_id"] == "8-0"
        assert kwargs["reason"] == REASON_COMPLETION_FAILED
        assert kwargs["error"] == "provider down"
        assert kwargs["payload"] == mention_fields["payload"]

        messenger.post_reply.assert_not_called()
        assert list_redis.turns(CONVERSATION) == []
        log.acknowledge.assert_awaited_once_with("8-0")


class TestDelivery:
    async def test_delivery_failure_dead_letters_without_memory(
        self, processor, messenger, dlq, log, list_redis, mention_fields,
    ):
        messenger.post_reply = AsyncMock(side_effect=DeliveryError("no Slack token stored for team T1"))

        outcome = await processor.process("9-0", mention_fields)

        assert outcome is EntryOutcome.DELIVERY_FAILED
        kwargs = dlq.send.call_args.kwargs
        assert kwargs["reason"] == REASON_DELIVERY_FAILED
        assert "no Slack token" in kwargs["error"]
        assert list_redis.turns(CONVERSATION) == []
        log.acknowledge.assert_awaited_once_with("9-0")


class TestSkipsAndDegradation:
    async def test_tombstone_acked_without_side_effects(
        self, processor, llm, messenger, dlq, log, make_payload,
    ):
        fields = {"payload": json.dumps(make_payload(added=0))}

        outcome = await processor.process("10-0", fields)

        assert outcome is EntryOutcome.SKIPPED
        llm.complete.assert_not_called()
        messenger.post_reply.assert_not_called()
        dlq.send.assert_not_called()
        log.acknowledge.assert_awaited_once_with("10-0")

    async def test_memory_read_failure_uses_empty_history(
        self, log, dlq, llm, messenger, sleep, mention_fields,
    ):
        memory = AsyncMock()
        memory.read = AsyncMock(side_effect=ConnectionError("redis gone"))
        processor = MentionProcessor(
            log, dlq, memory, llm, messenger, SYSTEM_PROMPT, sleep=sleep,
        )

        outcome = await processor.process("11-0", mention_fields)

        assert outcome is EntryOutcome.COMPLETED
        assert len(llm.complete.call_args[0][0]) == 2
        assert memory.append.await_count == 2

    async def test_memory_write_failure_still_completes(
        self, log, dlq, llm, messenger, sleep, mention_fields,
    ):
        memory = AsyncMock()
        memory.read = AsyncMock(return_value=[])
        memory.append = AsyncMock(side_effect=ConnectionError("redis gone"))
        processor = MentionProcessor(
            log, dlq, memory, llm, messenger, SYSTEM_PROMPT, sleep=sleep,
        )

        outcome = await processor.process("12-0", mention_fields)

        assert outcome is EntryOutcome.COMPLETED
        messenger.post_reply.assert_awaited_once()
        dlq.send.assert_not_called()
        log.acknowledge.assert_awaited_once_with("12-0")


class TestDeadLetterFailure:
    async def test_dlq_write_failure_leaves_entry_pending(self, processor, dlq, log):
        dlq.send = AsyncMock(side_effect=ConnectionError("redis gone"))

        outcome = await processor.process("13-0", {"payload": "not json"})

        assert outcome is EntryOutcome.LEFT_PENDING
        log.acknowledge.assert_not_called()

    async def test_acknowledge_failure_is_logged_not_raised(self, processor, log, mention_fields):
        log.acknowledge = AsyncMock(side_effect=ConnectionError("redis gone"))

        outcome = await processor.process("14-0", mention_fields)

        assert outcome is EntryOutcome.COMPLETED


class TestBuildMessages:
    def test_system_history_user_order(self, processor):
        history = [
            Turn(role="user", content="a"),
            Turn(role="assistant", content="b"),
        ]

        messages = processor.build_messages(history, "c")

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[-1]["content"] == "c"


class TestUnexpectedErrors:
    async def test_unexpected_error_dead_letters_verbatim_and_acks(
        self, processor, dlq, log, messenger, mention_fields,
    ):
        with patch.object(processor, "build_messages", side_effect=KeyError("role")):
            outcome = await processor.process("15-0", mention_fields)

        assert outcome is EntryOutcome.UNEXPECTED_ERROR
        kwargs = dlq.send.call_args.kwargs
        assert kwargs["original_id"] == "15-0"
        assert kwargs["reason"] == REASON_UNEXPECTED
        assert kwargs["payload"] == mention_fields["payload"]
        assert "role" in kwargs["error"]
        messenger.post_reply.assert_not_called()
        log.acknowledge.assert_awaited_once_with("15-0")

    async def test_unexpected_error_with_failed_dlq_write_stays_pending(
        self, processor, dlq, log, mention_fields,
    ):
        dlq.send = AsyncMock(side_effect=ConnectionError("redis gone"))

        with patch.object(processor, "build_messages", side_effect=KeyError("role")):
            outcome = await processor.process("16-0", mention_fields)

        assert outcome is EntryOutcome.LEFT_PENDING
        log.acknowledge.assert_not_called()


class TestRetryBudget:
    def test_max_completion_seconds(self):
        # three timed-out attempts plus the 0.5s and 1.0s waits between them
        assert max_completion_seconds(30) == 91.5
        assert max_completion_seconds(1) == 4.5
