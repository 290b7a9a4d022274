"""Command-line interface for the webhook relay.

This module provides CLI commands for listing supported events, signing
and verifying payloads, inspecting stats and recovering stranded
deliveries from a SQLite store.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from src.config import settings
from src.observability.logging import bind_context, configure_logging
from src.webhooks.events import supported_event_names
from src.webhooks.manager import WebhookManager
from src.webhooks.security import generate_signature, verify_signature
from src.webhooks.service import WebhookService
from src.webhooks.sqlite_storage import SQLiteWebhookStorage

logger = structlog.get_logger(__name__)


def read_body(path: str | None) -> bytes:
    """Read a payload body from a file, or stdin when no path is given.

    Args:
        path: Path to the body file.

    Returns:
        Raw body bytes.
    """
    if path:
        return Path(path).read_bytes()
    return sys.stdin.buffer.read()


def events_command(args: argparse.Namespace) -> int:  # noqa: ARG001
    """Execute the 'events' command."""
    for name in supported_event_names():
        print(name)
    return 0


def sign_command(args: argparse.Namespace) -> int:
    """Execute the 'sign' command."""
    print(generate_signature(read_body(args.file), args.secret))
    return 0


def verify_command(args: argparse.Namespace) -> int:
    """Execute the 'verify' command.

    Returns:
        Exit code (0 when the signature is valid, 1 otherwise).
    """
    if verify_signature(read_body(args.file), args.signature, args.secret):
        print("valid")
        return 0
    print("invalid")
    return 1


async def stats_command(args: argparse.Namespace) -> int:
    """Execute the 'stats' command.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    if not Path(args.db).exists():
        logger.error("database_not_found", path=args.db)
        return 1

    storage = SQLiteWebhookStorage(args.db)
    manager = WebhookManager(storage.subscriptions, storage.logs, settings=settings)
    summary = await manager.get_stats(args.owner)

    print(json.dumps(summary.model_dump(), indent=2))
    return 0


async def recover_command(args: argparse.Namespace) -> int:
    """Execute the 'recover' command.

    Re-enqueues pending deliveries and delivers them once. Deliveries that
    fail again stay pending for the next sweep. Run it only while no server
    is using the database: this process cannot see a live server's queue or
    in-flight deliveries, only the backoff recorded in the delivery log.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    if not Path(args.db).exists():
        logger.error("database_not_found", path=args.db)
        return 1

    storage = SQLiteWebhookStorage(args.db)
    service = WebhookService(
        subscriptions=storage.subscriptions,
        logs=storage.logs,
        settings=settings,
    )

    try:
        recovered = await service.recover_pending(args.min_age)
        delivered = await service.scheduler.drain()
    finally:
        await service.stop()

    print(json.dumps({"recovered": recovered, "delivered": delivered}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Webhook Relay CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("events", help="List supported event types")

    # Sign command
    sign_parser = subparsers.add_parser("sign", help="Sign a payload body")
    sign_parser.add_argument("--secret", required=True, help="Webhook secret")
    sign_parser.add_argument(
        "--file",
        "-f",
        help="File containing the body (reads stdin if not specified)",
    )

    # Verify command
    verify_parser = subparsers.add_parser("verify", help="Verify a payload signature")
    verify_parser.add_argument("--secret", required=True, help="Webhook secret")
    verify_parser.add_argument(
        "--signature",
        required=True,
        help="Value of the X-Webhook-Signature header",
    )
    verify_parser.add_argument(
        "--file",
        "-f",
        help="File containing the body (reads stdin if not specified)",
    )

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show delivery stats for an owner")
    stats_parser.add_argument("--db", required=True, help="Path to the SQLite database")
    stats_parser.add_argument("--owner", required=True, help="Owner ID")

    # Recover command
    recover_parser = subparsers.add_parser(
        "recover",
        help="Re-deliver deliveries stranded as pending (stop the server first)",
    )
    recover_parser.add_argument("--db", required=True, help="Path to the SQLite database")
    recover_parser.add_argument(
        "--min-age",
        type=float,
        default=settings.WEBHOOK_RECOVERY_MIN_AGE,
        help="Only recover deliveries overdue for at least this many seconds",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI.

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    # Keep stdout for command output
    configure_logging(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT, stream=sys.stderr)
    bind_context(command=args.command)

    # Run appropriate command
    if args.command == "events":
        return events_command(args)
    elif args.command == "sign":
        return sign_command(args)
    elif args.command == "verify":
        return verify_command(args)
    elif args.command == "stats":
        return asyncio.run(stats_command(args))
    elif args.command == "recover":
        return asyncio.run(recover_command(args))

    return 1


if __name__ == "__main__":
    sys.exit(main())
