"""
Entry point: run the publishing engine, or one admin action and exit.

Usage::

    # Long-running engine: queue consumers + sync + token refresh
    python run.py

    # One reconciliation sweep, printed as JSON
    python run.py --sync-once

    # One token refresh batch (or a single profile)
    python run.py --refresh-tokens
    python run.py --refresh-token <profile_id>

    # Queue counts, or the jobs in one bucket
    python run.py --stats
    python run.py --list failed --limit 50

    # Re-enter every failed post (optionally for one user)
    python run.py --retry-failed [--user <user_id>]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

from social_publisher.config import get_settings, validate_env  # noqa: E402
from social_publisher.exceptions import ConfigurationError  # noqa: E402

logger = logging.getLogger("run")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Social publishing engine")
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--sync-once",
        action="store_true",
        help="Run one reconciliation sweep and exit",
    )
    action.add_argument(
        "--refresh-tokens",
        action="store_true",
        help="Refresh every token expiring within the lookahead window and exit",
    )
    action.add_argument(
        "--refresh-token",
        metavar="PROFILE_ID",
        help="Refresh one profile's token and exit",
    )
    action.add_argument(
        "--stats",
        action="store_true",
        help="Print queue counts and exit",
    )
    action.add_argument(
        "--list",
        metavar="BUCKET",
        choices=["waiting", "active", "completed", "failed", "delayed"],
        help="Print the jobs in one queue bucket and exit",
    )
    action.add_argument(
        "--retry-failed",
        action="store_true",
        help="Re-schedule every failed post and exit",
    )
    parser.add_argument("--user", metavar="USER_ID", help="Restrict --retry-failed to one user")
    parser.add_argument("--offset", type=int, default=0, help="Offset for --list (default 0)")
    parser.add_argument("--limit", type=int, default=20, help="Limit for --list (default 20)")
    return parser.parse_args()


async def _run_action(service, args: argparse.Namespace) -> dict:
    if args.sync_once:
        return await service.sync_scheduled_posts()
    if args.refresh_tokens:
        return await service.refresh_expiring_tokens()
    if args.refresh_token:
        return await service.refresh_token(args.refresh_token)
    if args.stats:
        return await service.get_stats()
    if args.list:
        return {"jobs": await service.list_jobs(args.list, args.offset, args.limit)}
    return await service.retry_all_failed(args.user)


async def main() -> None:
    from social_publisher.service import PublisherService

    args = _parse_args()
    settings = get_settings()
    _configure_logging(settings.log_level)
    validate_env(strict=True)

    service = await PublisherService.create(settings)
    one_shot = any(
        [args.sync_once, args.refresh_tokens, args.refresh_token, args.stats,
         args.list, args.retry_failed]
    )

    if one_shot:
        await service.queue.open()
        try:
            result = await _run_action(service, args)
        finally:
            await service.queue.close()
        print(json.dumps(result, indent=2, default=str))
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    await service.start()
    logger.info("Publishing engine running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await service.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Configuration error: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
