#!/usr/bin/env python3
"""
walletqueue-admin: Inspect and maintain a walletqueue database.

Usage:
    walletqueue-admin queue
    walletqueue-admin cache --live
    walletqueue-admin purge
    walletqueue-admin discard 42
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from rich.console import Console

from walletqueue.config import Settings
from walletqueue.db import DatabaseService
from walletqueue_admin.display import cache_table, queue_table


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the admin tool."""
    walletqueue_logger = logging.getLogger("walletqueue")
    if verbose:
        walletqueue_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        walletqueue_logger.addHandler(handler)
    else:
        walletqueue_logger.setLevel(logging.WARNING)


async def show_queue(db: DatabaseService, console: Console, limit: int) -> int:
    records = await db.list_queued_tasks(limit=limit)
    if not records:
        console.print("Queue is empty.")
        return 0
    console.print(queue_table(records))
    total = await db.count_queued_tasks()
    console.print(f"{total} queued task(s)")
    return 0


async def show_cache(db: DatabaseService, console: Console, limit: int, live_only: bool) -> int:
    entries = await db.list_cache(live_only=live_only, limit=limit)
    if not entries:
        console.print("Cache is empty.")
        return 0
    console.print(cache_table(entries))
    return 0


async def purge(db: DatabaseService, console: Console) -> int:
    cache_count = await db.purge_expired_cache()
    queue_count = await db.purge_expired_queued_tasks()
    console.print(f"Purged {cache_count} expired cache entries and {queue_count} expired queued tasks.")
    return 0


async def discard(db: DatabaseService, console: Console, task_id: int) -> int:
    record = await db.get_queued_task(task_id)
    if record is None:
        console.print(f"[red]No queued task with id {task_id}[/red]")
        return 1
    await db.delete_queued_task(task_id)
    console.print(f"Discarded task {task_id} ({record.task_name}).")
    return 0


async def run_command(args: argparse.Namespace, console: Console | None = None) -> int:
    console = console or Console()
    settings = Settings.from_env(db_path=args.db)
    db = await DatabaseService.open(settings.db_path)
    try:
        if args.command == "queue":
            return await show_queue(db, console, args.limit)
        if args.command == "cache":
            return await show_cache(db, console, args.limit, args.live)
        if args.command == "purge":
            return await purge(db, console)
        return await discard(db, console, args.id)
    finally:
        await db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="walletqueue admin - inspect and maintain the task queue database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  walletqueue-admin --db wallet.db queue
  walletqueue-admin cache --live --limit 20
  walletqueue-admin purge
  walletqueue-admin discard 42
        """,
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: $WALLETQUEUE_DB_PATH or walletqueue.db)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log walletqueue debug output to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    queue_parser = subparsers.add_parser("queue", help="List persisted queue records")
    queue_parser.add_argument("--limit", type=int, default=100, help="Maximum rows (default: 100)")

    cache_parser = subparsers.add_parser("cache", help="List cached task results")
    cache_parser.add_argument("--limit", type=int, default=100, help="Maximum rows (default: 100)")
    cache_parser.add_argument("--live", action="store_true", help="Only entries that have not expired")

    subparsers.add_parser("purge", help="Delete expired cache entries and queue records")

    discard_parser = subparsers.add_parser("discard", help="Delete one queue record")
    discard_parser.add_argument("id", type=int, help="Queue record id")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
