"""
Standalone entrypoint for running the test-execution worker.

The worker consumes the shared job store one job at a time, bringing the
compose services up as needed.

Usage:
    python -m e2e_controller [OPTIONS]
    e2e-worker [OPTIONS]  (after pip install)

Environment Variables:
    E2E_DB_PATH: Database path (default: e2e_jobs.db)
    E2E_POLL_INTERVAL: Seconds between queue polls when idle (default: 2.0)
    E2E_COMPOSE_COMMAND: Compose CLI invocation (default: "docker compose")
    E2E_PROJECT_DIR: Compose project directory (default: current directory)
    E2E_ORCHESTRATOR_MODE: Emulator orchestrator, local or remote (default: local)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from e2e_controller.compose import ComposeRuntime
from e2e_controller.config import EngineSettings
from e2e_controller.context import EngineContext
from e2e_controller.lifecycle import LifecycleManager
from e2e_controller.orchestrator import create_orchestrator
from e2e_controller.worker import TestWorker
from e2e_persistence.sqlite_repository import SQLiteJobRepository

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="E2E Worker - runs queued mobile UI test jobs against the emulator services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  E2E_DB_PATH             Database path (default: e2e_jobs.db)
  E2E_POLL_INTERVAL       Seconds between queue polls when idle (default: 2.0)
  E2E_COMPOSE_COMMAND     Compose CLI invocation (default: "docker compose")
  E2E_PROJECT_DIR         Compose project directory (default: current directory)
  E2E_ORCHESTRATOR_MODE   Emulator orchestrator: local or remote (default: local)
  E2E_PUBLIC_HOST         Host name used in viewer/driver URLs (default: localhost)
  E2E_PACKAGE_ROOT        Root for relative application package paths (default: .)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  e2e-worker

  # Use custom database and poll interval
  e2e-worker --db-path /tmp/e2e_jobs.db --interval 5.0

  # Point at a compose project elsewhere
  e2e-worker --project-dir /srv/mobile-e2e

  # Enable debug logging
  e2e-worker --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: E2E_DB_PATH env or e2e_jobs.db)",
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between queue polls when idle (default: E2E_POLL_INTERVAL env or 2.0)",
    )

    parser.add_argument(
        "--project-dir",
        type=str,
        default=None,
        help="Compose project directory (default: E2E_PROJECT_DIR env or cwd)",
    )

    parser.add_argument(
        "--no-preinstall",
        action="store_true",
        help="Do not install the application package through the orchestrator before runs",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args()


def get_database_path(args: argparse.Namespace) -> str:
    """
    Get the database path from CLI args or environment or use default.

    Args:
        args: Parsed command-line arguments

    Returns:
        Path to the SQLite database file
    """
    if args.db_path:
        return args.db_path
    return os.environ.get("E2E_DB_PATH", "e2e_jobs.db")


def get_poll_interval(args: argparse.Namespace) -> float:
    """
    Get the idle queue poll interval from CLI args or environment.

    Args:
        args: Parsed command-line arguments

    Returns:
        Seconds between queue polls
    """
    # Try CLI arg first
    if args.interval is not None:
        if args.interval <= 0:
            logger.warning(f"Invalid interval={args.interval}, using default 2.0")
            return 2.0
        return args.interval

    # Fall back to environment variable
    try:
        interval = float(os.environ.get("E2E_POLL_INTERVAL", "2.0"))
        if interval <= 0:
            logger.warning(f"Invalid E2E_POLL_INTERVAL={interval}, using default 2.0")
            return 2.0
        return interval
    except ValueError:
        logger.warning(
            f"Invalid E2E_POLL_INTERVAL={os.environ.get('E2E_POLL_INTERVAL')}, "
            "using default 2.0"
        )
        return 2.0


def get_settings(args: argparse.Namespace) -> EngineSettings:
    """
    Build engine settings from the environment, applying CLI overrides.

    Args:
        args: Parsed command-line arguments
    """
    settings = EngineSettings.from_env()
    if args.project_dir is not None:
        settings.project_dir = args.project_dir
    return settings


async def run_worker(args: argparse.Namespace) -> None:
    """
    Initialize and run the test worker.

    Args:
        args: Parsed command-line arguments

    This function wires the store, compose runtime, lifecycle manager and
    orchestrator together and runs the worker until SIGINT or SIGTERM.
    """
    # Get configuration
    db_path = get_database_path(args)
    poll_interval = get_poll_interval(args)
    settings = get_settings(args)

    logger.info("Starting E2E Worker")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Poll interval: {poll_interval}s")
    logger.info(f"  Compose command: {' '.join(settings.compose_command)}")
    logger.info(f"  Project directory: {settings.project_dir or '(cwd)'}")
    logger.info(f"  Orchestrator mode: {settings.orchestrator_mode}")

    # Initialize repository
    repository = SQLiteJobRepository(db_path)
    await repository.initialize()
    logger.info("Database initialized")

    runtime = ComposeRuntime(settings.compose_command, settings.project_dir)
    context = EngineContext(status_cache_ttl=settings.lifecycle.status_cache_ttl)
    lifecycle = LifecycleManager(runtime, context, settings.lifecycle)
    orchestrator = None
    if not args.no_preinstall:
        orchestrator = create_orchestrator(settings, repository)

    worker = TestWorker(
        repository=repository,
        lifecycle=lifecycle,
        results=repository,
        orchestrator=orchestrator,
        timeouts=settings.worker,
        poll_interval=poll_interval,
    )

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
        logger.info("Worker started successfully")

        # Wait for shutdown signal
        await shutdown_event.wait()

    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Stopping worker...")
        await worker.stop()
        logger.info("Closing database connections...")
        await repository.close()
        logger.info("Worker stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the worker.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_worker(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
