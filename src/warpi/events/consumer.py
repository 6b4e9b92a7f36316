"""Consumer loop: poll the stream, dispatch batches, reclaim stalled entries.

Reads entries through the consumer group and hands each one to the
MentionProcessor, which always drives it to a terminal outcome. Two
dispatch modes:

- concurrent (default): every entry of a fetched batch runs as its own
  task, with at most ``max_in_flight`` entries in progress at a time.
- sequential: one entry is fully finished before the next starts.

Either way the next fetch waits until the whole batch is done.

A background sweep periodically claims entries left pending by consumers
that died mid-entry (XAUTOCLAIM) and runs them through the same path.
XAUTOCLAIM also returns this consumer's own slow entries, so IDs still
in progress here are skipped. Other workers are kept off them by requiring
``RECLAIM_IDLE_MS`` to exceed the longest completion retry loop (checked
in ``src.warpi.worker.build_consumer``).
"""

from __future__ import annotations

import asyncio

import structlog

from src.warpi.config import DispatchMode
from src.warpi.events.bus import EventLog, StreamEntry
from src.warpi.events.processor import EntryOutcome, MentionProcessor

logger = structlog.get_logger(__name__)

FETCH_ERROR_PAUSE_SECONDS = 1.0


class EventConsumer:
    """One consumer identity in the group.

    Args:
        log: Stream + group to read from.
        processor: Handles individual entries.
        consumer_name: Unique consumer identifier within the group.
        block_ms: Longest wait for new entries per fetch.
        count: Maximum entries per fetch.
        dispatch_mode: Concurrent or sequential batch handling.
        max_in_flight: Entries processed at once in concurrent mode.
        reclaim_idle_ms: Pending entries idle this long are reclaimed
            (0 disables the sweep).
        reclaim_interval: Seconds between reclaim sweeps.
    """

    def __init__(
        self,
        log: EventLog,
        processor: MentionProcessor,
        consumer_name: str,
        block_ms: int = 2000,
        count: int = 5,
        dispatch_mode: DispatchMode = DispatchMode.concurrent,
        max_in_flight: int = 4,
        reclaim_idle_ms: int = 120000,
        reclaim_interval: float = 30.0,
    ) -> None:
        self._log = log
        self._processor = processor
        self._consumer_name = consumer_name
        self._block_ms = block_ms
        self._count = count
        self._dispatch_mode = dispatch_mode
        self._in_flight = asyncio.Semaphore(max_in_flight)
        self._reclaim_idle_ms = reclaim_idle_ms
        self._reclaim_interval = reclaim_interval
        self._running = False
        self._active: set[str] = set()

    @property
    def consumer_name(self) -> str:
        return self._consumer_name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_entries(self) -> frozenset[str]:
        """IDs dispatched by this consumer and not yet finished."""
        return frozenset(self._active)

    async def run(self) -> None:
        """Ensure the group exists, then poll until ``stop()``.

        Group setup failures other than "already exists" propagate and
        end the worker.
        """
        await self._log.ensure_group()

        self._running = True
        logger.info(
            "consumer_started",
            stream=self._log.stream,
            group=self._log.group,
            consumer=self._consumer_name,
            dispatch_mode=self._dispatch_mode.value,
        )

        reclaim_task: asyncio.Task | None = None
        if self._reclaim_idle_ms > 0 and self._reclaim_interval > 0:
            reclaim_task = asyncio.create_task(self._reclaim_loop())

        try:
            while self._running:
                await self.poll_once()
        finally:
            if reclaim_task is not None:
                reclaim_task.cancel()
                await asyncio.gather(reclaim_task, return_exceptions=True)
            logger.info("consumer_stopped", consumer=self._consumer_name)

    async def poll_once(self) -> list[EntryOutcome]:
        """One fetch and the processing of everything it returned."""
        try:
            entries = await self._log.fetch(
                self._consumer_name,
                block_ms=self._block_ms,
                count=self._count,
            )
        except Exception as exc:
            logger.error(
                "stream_fetch_failed",
                stream=self._log.stream,
                consumer=self._consumer_name,
                error=str(exc),
            )
            await asyncio.sleep(FETCH_ERROR_PAUSE_SECONDS)
            return []

        return await self.dispatch(entries)

    async def dispatch(self, entries: list[StreamEntry]) -> list[EntryOutcome]:
        """Process a batch according to the dispatch mode.

        Entries this consumer is already processing (queued, waiting on the
        completion gate or mid-retry) are dropped from the batch; a reclaim
        sweep sees them as idle pending entries of the group.
        """
        batch = [(entry_id, fields) for entry_id, fields in entries if entry_id not in self._active]
        if len(batch) < len(entries):
            logger.info(
                "entries_already_in_flight",
                consumer=self._consumer_name,
                skipped=len(entries) - len(batch),
            )
        if not batch:
            return []

        self._active.update(entry_id for entry_id, _ in batch)

        if self._dispatch_mode is DispatchMode.sequential:
            outcomes = []
            for entry_id, fields in batch:
                outcomes.append(await self._process_tracked(entry_id, fields))
            return outcomes

        return list(
            await asyncio.gather(
                *(self._process_bounded(entry_id, fields) for entry_id, fields in batch)
            )
        )

    async def reclaim_once(self) -> list[EntryOutcome]:
        """Claim idle pending entries and process them."""
        entries = await self._log.reclaim(
            self._consumer_name,
            min_idle_ms=self._reclaim_idle_ms,
            count=self._count,
        )
        return await self.dispatch(entries)

    def stop(self) -> None:
        """Signal the processing loop to stop after current iteration."""
        self._running = False

    async def _process_bounded(self, entry_id: str, fields: dict[str, str]) -> EntryOutcome:
        async with self._in_flight:
            return await self._process_tracked(entry_id, fields)

    async def _process_tracked(self, entry_id: str, fields: dict[str, str]) -> EntryOutcome:
        try:
            return await self._processor.process(entry_id, fields)
        finally:
            self._active.discard(entry_id)

    async def _reclaim_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._reclaim_interval)
            try:
                await self.reclaim_once()
            except Exception as exc:
                logger.error(
                    "reclaim_sweep_failed",
                    consumer=self._consumer_name,
                    error=str(exc),
                )
