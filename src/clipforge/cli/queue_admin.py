"""CLI command for operating the video job queue.

Usage:
    python -m clipforge.cli.queue_admin {stats,pause,resume,drain}

Examples:
    # Show waiting/active/completed/failed/delayed counts
    python -m clipforge.cli.queue_admin stats

    # Stop workers from picking up new jobs
    python -m clipforge.cli.queue_admin pause

    # Remove every waiting job, cancelling and refunding each one
    python -m clipforge.cli.queue_admin drain
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from dataclasses import asdict
from typing import Optional, Sequence

import structlog

from clipforge.core.config import Settings, configure_logging
from clipforge.core.container import ServiceContainer, build_services
from clipforge.services.exceptions import ServiceError

logger = structlog.get_logger()

COMMANDS = ("stats", "pause", "resume", "drain")


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Inspect and operate the video job queue")
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    return parser.parse_args(argv)


async def run_command(services: ServiceContainer, command: str) -> dict:
    """Execute one queue command and return a printable summary."""
    queue = services.queue
    if command == "stats":
        return asdict(await queue.stats())
    if command == "pause":
        await queue.pause()
        return {"paused": True}
    if command == "resume":
        await queue.resume()
        return {"paused": False}

    removed = await queue.drain()
    cancelled = 0
    for generation_id in removed:
        if await services.lifecycle.cancel(generation_id):
            await services.publisher.emit_job_cancelled(generation_id)
            cancelled += 1
    return {"removed": len(removed), "cancelled": cancelled}


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    services = build_services(settings)
    try:
        summary = await run_command(services, args.command)
    except ServiceError as e:
        logger.error("cli.queue_error", command=args.command, error=e.message)
        print(f"\nError: {e.message}", file=sys.stderr)
        return 1
    finally:
        await services.aclose()

    print(f"Queue '{settings.queue_name}' {args.command}:")
    for key, value in summary.items():
        print(f"  {key}: {value}")
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
