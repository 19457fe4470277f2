# cli/cli.py
"""
Operator commands for the lead import pipeline.

    python -m cli.cli queue-stats
    python -m cli.cli requeue-stale --older-than-minutes 90 --dry-run
    python -m cli.cli system-status
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import timedelta
from typing import Callable, Dict, Optional

from api.core.config import settings
from api.core.logging import configure_structlog
from api.db.session import dispose_engine, health_check as database_health_check
from api.services.dispatcher import ImportJobDispatcher
from api.services.import_jobs import ImportJobRepository
from api.services.job_queue import JobQueue
from api.services.redis import close_redis_pool, get_redis_client, health_check as redis_health_check
from api.services.stale_jobs import requeue_stale_jobs


# Output formatting utilities
def _supports_color() -> bool:
    """Check if terminal supports ANSI color codes."""
    if sys.platform == "win32":
        return os.getenv("TERM") == "xterm" or os.getenv("ANSICON") is not None
    return sys.stdout.isatty()


SUPPORTS_COLOR = _supports_color()

GREEN = '\033[92m' if SUPPORTS_COLOR else ''
RED = '\033[91m' if SUPPORTS_COLOR else ''
YELLOW = '\033[93m' if SUPPORTS_COLOR else ''
BLUE = '\033[94m' if SUPPORTS_COLOR else ''
RESET = '\033[0m' if SUPPORTS_COLOR else ''


def print_success(message: str):
    print(f"{GREEN}[✓]{RESET} {message}")


def print_error(message: str):
    print(f"{RED}[✗]{RESET} {message}")


def print_warning(message: str):
    print(f"{YELLOW}[!]{RESET} {message}")


def print_info(message: str):
    print(f"{BLUE}[i]{RESET} {message}")


# Command functions
async def cmd_queue_stats(args: argparse.Namespace) -> int:
    """Command: Show ready and in-flight message counts."""
    queue = JobQueue(await get_redis_client(), queue_name=args.queue)
    stats = await queue.get_queue_stats()

    print_info(f"Queue: {stats['queue']}")
    print_info(f"  Ready:     {stats['ready']}")
    print_info(f"  In flight: {stats['in_flight']}")
    return 0


async def cmd_requeue_stale(args: argparse.Namespace) -> int:
    """Command: Re-dispatch jobs stuck in processing."""
    older_than = timedelta(minutes=args.older_than_minutes)
    print_info(f"Looking for jobs processing for more than {args.older_than_minutes} minutes...")

    queue = JobQueue(await get_redis_client())
    requeued = await requeue_stale_jobs(
        ImportJobRepository(),
        ImportJobDispatcher(queue),
        older_than,
        dry_run=args.dry_run,
    )

    if not requeued:
        print_success("No stale jobs")
        return 0

    verb = "Would requeue" if args.dry_run else "Requeued"
    for job_id in requeued:
        print_warning(f"{verb} {job_id}")
    print_success(f"{verb} {len(requeued)} job(s)")
    return 0


async def cmd_system_status(args: argparse.Namespace) -> int:
    """Command: Quick database and Redis check."""
    checks = {
        "database": await database_health_check(),
        "redis": await redis_health_check(),
    }

    healthy = True
    for name, result in checks.items():
        if result.get("status") == "healthy":
            print_success(f"{name.capitalize()}: healthy")
        else:
            healthy = False
            print_error(f"{name.capitalize()}: {result.get('status', 'unknown')}")
            if result.get("error"):
                print_error(f"  Error: {result['error']}")

    return 0 if healthy else 1


# Command registry
COMMANDS: Dict[str, Callable] = {
    'queue-stats': cmd_queue_stats,
    'requeue-stale': cmd_requeue_stale,
    'system-status': cmd_system_status,
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands."""
    parser = argparse.ArgumentParser(
        description='Lead import operator CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    stats_parser = subparsers.add_parser('queue-stats', help='Show import queue depth')
    stats_parser.add_argument('--queue', default=settings.csv_import_queue_name, help='Queue name')

    stale_parser = subparsers.add_parser('requeue-stale', help='Re-dispatch jobs stuck in processing')
    stale_parser.add_argument(
        '--older-than-minutes',
        type=int,
        default=settings.stale_job_minutes,
        help='Processing age after which a job counts as stale',
    )
    stale_parser.add_argument('--dry-run', action='store_true', help='List stale jobs without requeueing')

    subparsers.add_parser('system-status', help='Quick system health check')

    return parser


async def _run(command_func: Callable, parsed_args: argparse.Namespace) -> int:
    try:
        return await command_func(parsed_args)
    finally:
        await close_redis_pool()
        await dispose_engine()


def main(args: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    command_func = COMMANDS.get(parsed_args.command)
    if not command_func:
        print_error(f"Unknown command: {parsed_args.command}")
        parser.print_help()
        return 1

    configure_structlog()

    try:
        return asyncio.run(_run(command_func, parsed_args))
    except KeyboardInterrupt:
        print_error("\nInterrupted by user")
        return 130
    except Exception as e:
        print_error(f"Error executing command: {str(e)}")
        if os.getenv('DEBUG'):
            import traceback
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
