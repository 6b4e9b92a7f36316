#!/usr/bin/env python3
"""CLI for inspecting and redriving the dead-letter stream.

Usage:
    python scripts/dlq.py list --count 20
    python scripts/dlq.py replay 1718000000000-0
    python scripts/dlq.py pending

Connects with REDIS_URL from environment or .env file. Replay re-appends
the stored payload verbatim to the mention stream and removes the DLQ
entry.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.warpi
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(command: str, count: int, dlq_id: str | None) -> None:
    from src.warpi.config import get_settings
    from src.warpi.core.redis import RedisConnection
    from src.warpi.events.bus import EventLog
    from src.warpi.events.dlq import DeadLetterLog

    settings = get_settings()
    async with RedisConnection(settings.REDIS_URL) as conn:
        log = EventLog(conn.client, settings.STREAM_NAME, settings.CONSUMER_GROUP)
        dlq = DeadLetterLog(conn.client, settings.DLQ_STREAM_NAME)

        if command == "list":
            entries = await dlq.list_entries(count=count)
            print(f"{len(entries)} dead letter(s) in {dlq.stream}")
            for entry_id, record in entries:
                print(f"- {entry_id}  original={record.original_id}  reason={record.reason or '-'}")
                print(f"    failed_at: {record.failed_at.isoformat()}")
                if record.error:
                    print(f"    error:     {record.error}")
                print(f"    payload:   {record.payload[:200]}")

        elif command == "replay":
            new_id = await dlq.replay(dlq_id, log)
            print(f"Replayed {dlq_id} into {log.stream} as {new_id}")

        elif command == "pending":
            info = await log.stream_info()
            summary = await log.pending_summary()
            print(f"{log.stream}: {info.get('length', 0)} entries, last id {info.get('last-generated-id')}")
            print(f"Pending in {log.group}: {summary.get('pending', 0)}")
            for consumer in summary.get("consumers") or []:
                print(f"- {consumer['name']}: {consumer['pending']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect and redrive dead letters")
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="Show the oldest dead letters")
    list_cmd.add_argument("--count", type=int, default=50, help="Maximum entries to show")

    replay_cmd = sub.add_parser("replay", help="Re-append one dead letter to the mention stream")
    replay_cmd.add_argument("dlq_id", help="Entry ID in the dead-letter stream")

    sub.add_parser("pending", help="Show stream length and the group's pending entries")

    args = parser.parse_args()
    asyncio.run(run(args.command, getattr(args, "count", 50), getattr(args, "dlq_id", None)))


if __name__ == "__main__":
    main()
