"""Shared fixtures for the mention pipeline tests.

Provides:
- A mocked async Redis client whose ``pipeline()`` works as an async
  context manager (commands are recorded on the pipeline mock)
- A list-backed Redis double for memory tests (RPUSH/LTRIM/LRANGE/DEL and
  WATCH/MULTI transactions over plain Python lists)
- Sample mention payloads
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest


def make_pipeline() -> MagicMock:
    pipe = MagicMock()
    pipe.__aenter__.return_value = pipe
    pipe.__aexit__.return_value = False
    pipe.execute = AsyncMock(return_value=[1, 1])
    return pipe


@pytest.fixture
def pipeline() -> MagicMock:
    return make_pipeline()


@pytest.fixture
def mock_redis(pipeline) -> AsyncMock:
    """AsyncMock Redis; ``mock_redis.pipeline()`` returns the ``pipeline`` fixture."""
    redis = AsyncMock()
    redis.pipeline = MagicMock(return_value=pipeline)
    redis.xadd = AsyncMock(return_value="9999-0")
    return redis


class ListRedis:
    """Just enough of the Redis list API, backed by dicts of lists."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.transaction_calls = 0

    # immediate commands

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return list(items[start:stop])

    async def delete(self, key: str) -> int:
        return 1 if self.lists.pop(key, None) is not None else 0

    # queued commands (applied immediately; ordering is preserved)

    def _rpush(self, key: str, *values: str) -> None:
        self.lists.setdefault(key, []).extend(values)

    def _ltrim(self, key: str, start: int, end: int) -> None:
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        self.lists[key] = items[start:stop]

    def _delete(self, key: str) -> None:
        self.lists.pop(key, None)

    def _make_pipe(self) -> MagicMock:
        pipe = make_pipeline()
        pipe.rpush = MagicMock(side_effect=self._rpush)
        pipe.ltrim = MagicMock(side_effect=self._ltrim)
        pipe.delete = MagicMock(side_effect=self._delete)
        pipe.lrange = AsyncMock(side_effect=self.lrange)
        pipe.multi = MagicMock()
        return pipe

    def pipeline(self, transaction: bool = True) -> MagicMock:
        return self._make_pipe()

    async def transaction(self, func, *watches: str, value_from_callable: bool = False) -> Any:
        self.transaction_calls += 1
        pipe = self._make_pipe()
        value = await func(pipe)
        return value if value_from_callable else []

    def turns(self, key: str) -> list[dict[str, Any]]:
        return [json.loads(raw) for raw in self.lists.get(f"thread:MEMORY:{key}", [])]


@pytest.fixture
def list_redis() -> ListRedis:
    return ListRedis()


def mention_payload(**overrides: Any) -> dict[str, Any]:
    """The canonical hello-from-U1 payload, with top-level overrides."""
    payload: dict[str, Any] = {
        "event": {"channel": "C1", "ts": "100", "text": "hello"},
        "body": {
            "userId": "U1",
            "message": "hello",
            "team": "T1",
            "channel": "C1",
            "thread_ts": None,
        },
        "uniqueId": "U1-100",
        "added": 1,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def mention_fields() -> dict[str, str]:
    return {"payload": json.dumps(mention_payload())}


@pytest.fixture
def make_payload():
    """Factory fixture around ``mention_payload``."""
    return mention_payload
