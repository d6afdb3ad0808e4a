"""Standalone video worker process.

Usage:
    python -m clipforge.cli.run_worker [OPTIONS]

Examples:
    # Run with settings from the environment
    python -m clipforge.cli.run_worker

    # Override concurrency and worker id
    python -m clipforge.cli.run_worker --concurrency 5 --worker-id render-01

    # Verbose logging
    python -m clipforge.cli.run_worker -v

SIGINT/SIGTERM stop dequeuing; in-flight jobs get the shutdown grace period to
finish before they are cancelled and left for stall recovery.
"""

import asyncio
import signal
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from clipforge.core.config import Settings, configure_logging
from clipforge.core.container import build_services
from clipforge.core.database import create_tables

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Run a video generation worker pool")

    parser.add_argument(
        "--concurrency",
        type=int,
        help="Parallel jobs for this process (default: QUEUE_MAX_CONCURRENT)",
    )

    parser.add_argument(
        "--worker-id",
        help="Identifier recorded on leased jobs (default: hostname:pid)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (clean shutdown), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    if args.concurrency:
        settings.queue_max_concurrent = args.concurrency

    configure_logging(settings)

    services = build_services(settings)
    try:
        await create_tables(services.engine)
        pool = services.build_worker_pool(worker_id=args.worker_id)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, pool.stop)

        logger.info(
            "cli.worker_starting",
            worker_id=pool.worker_id,
            concurrency=pool.concurrency,
            queue=settings.queue_name,
        )
        await pool.run()
        return 0

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await services.aclose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
