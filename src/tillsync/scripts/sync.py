# src/tillsync/scripts/sync.py
"""Run sync cycles or reset checkpoints from the command line."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from tillsync.core.settings import settings
from tillsync.db.session import get_store
from tillsync.services.entities import entity_names
from tillsync.services.remote import get_remote_store
from tillsync.services.sync import SyncEngine, get_sync_engine
from tillsync.services.sync_worker import SyncWorker


async def _run_once(engine: SyncEngine) -> int:
    report = await engine.sync_all()
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.ok else 1


async def _run_loop(engine: SyncEngine, interval: float) -> int:
    worker = SyncWorker(engine, interval)
    await worker.start()
    try:
        while worker.running:
            await asyncio.sleep(1.0)
    finally:
        await worker.stop()
    return 0


async def _main(args: argparse.Namespace) -> int:
    engine = get_sync_engine()
    try:
        await get_store().ensure_open()
        if args.reset_pull or args.reset_push:
            table = None if args.table == "all" else args.table
            if args.reset_pull:
                engine.reset_pull_checkpoint(table)
            if args.reset_push:
                engine.reset_push_checkpoint(table)
            for checkpoint in engine.checkpoints():
                print(json.dumps(checkpoint.to_dict()))
            return 0
        if not settings.remote_enabled:
            print("[sync] TILLSYNC_REMOTE_URL is not set", file=sys.stderr)
            return 2
        if args.loop:
            return await _run_loop(engine, args.interval or settings.sync_interval_seconds)
        return await _run_once(engine)
    finally:
        await get_remote_store().close()
        get_store().close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Synchronize the local store with the remote store")
    parser.add_argument("--loop", action="store_true", help="Keep syncing on an interval.")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles.")
    parser.add_argument(
        "--reset-pull",
        action="store_true",
        help="Reset pull checkpoints so the next cycle re-reads remote rows.",
    )
    parser.add_argument(
        "--reset-push",
        action="store_true",
        help="Reset push checkpoints so the next cycle re-sends local rows.",
    )
    parser.add_argument(
        "--table",
        choices=["all", *entity_names()],
        default="all",
        help="Table for checkpoint resets.",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=settings.log_level)
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
