"""Docked - container image update detection and batch job engine."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from docked.config import LOG_LEVEL, METRICS_PORT, RUN_RETENTION_DAYS
from docked.db import AsyncSessionLocal, init_db
from docked.schemas.batch import BatchConfigSchema, BatchRunSchema
from docked.services.batch_manager import BatchManager
from docked.services.db_queue import DatabaseOperationQueue
from docked.services.event_bus import EventBus
from docked.services.jobs.image_source import DatabaseImageSource, DatabaseTrackedAppSource
from docked.services.jobs.image_update_check import ImageUpdateCheckHandler
from docked.services.jobs.tracked_apps_check import TrackedAppsCheckHandler
from docked.services.metrics import start_metrics_server
from docked.services.registry.manager import RegistryManager

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Request lines from httpx are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


@dataclass
class Application:
    """Process-wide collaborators, created once at startup."""

    db_queue: DatabaseOperationQueue
    registry: RegistryManager
    event_bus: EventBus
    batch_manager: BatchManager


def build_batch_manager(
    registry: RegistryManager,
    db_queue: DatabaseOperationQueue,
    event_bus: Optional[EventBus] = None,
) -> BatchManager:
    """Create a BatchManager with the built-in job handlers registered."""
    manager = BatchManager(registry, db_queue, event_bus)
    manager.register_handler(ImageUpdateCheckHandler(DatabaseImageSource(db_queue)))
    manager.register_handler(TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)))
    return manager


@asynccontextmanager
async def lifespan(
    start_scheduler: bool = True, sweep_stale_runs: bool = True
) -> AsyncIterator[Application]:
    """Application lifespan: startup and shutdown.

    Args:
        start_scheduler: Run the interval scheduler
        sweep_stale_runs: Fail runs left "running" past STARTUP_STALE_THRESHOLD.
            Off for the read-only and maintenance commands.
    """
    logger.info("Starting Docked...")

    await init_db()
    logger.info("Database initialized")

    db_queue = DatabaseOperationQueue(AsyncSessionLocal)
    registry = RegistryManager()
    event_bus = EventBus()
    batch_manager = build_batch_manager(registry, db_queue, event_bus)

    # Runs left "running" by a crash would otherwise hold their lock
    if sweep_stale_runs:
        cleaned = await batch_manager.cleanup_stale_runs()
        if cleaned:
            logger.warning(f"Marked {cleaned} interrupted batch run(s) as failed")

    if METRICS_PORT and start_scheduler:
        start_metrics_server(int(METRICS_PORT))
        logger.info(f"Metrics exposed on port {METRICS_PORT}")

    if start_scheduler:
        await batch_manager.start()
        logger.info("Batch scheduler started")

    try:
        yield Application(
            db_queue=db_queue,
            registry=registry,
            event_bus=event_bus,
            batch_manager=batch_manager,
        )
    finally:
        logger.info("Shutting down Docked...")
        await batch_manager.stop()
        await registry.aclose()


async def serve() -> None:
    """Run the scheduler until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt for SIGINT
            pass

    async with lifespan(start_scheduler=True):
        await stop_event.wait()


async def run_once(job_type: str) -> int:
    """Run one manual batch job and report its outcome.

    Returns:
        Process exit code
    """
    async with lifespan(start_scheduler=False) as app:
        outcome = await app.batch_manager.run_job(job_type, is_manual=True)

    if outcome.already_running:
        print(f"{job_type} is already running (run {outcome.run_id})")
        return 1

    run = outcome.run
    print(
        f"Run {outcome.run_id} {outcome.status}: checked={run.checked_count} "
        f"updated={run.updated_count} duration={run.duration_ms}ms"
    )
    if run.error_message:
        print(f"Error: {run.error_message}")
    return 0 if outcome.status == "completed" else 1


async def build_status_report(manager: BatchManager, history: int = 0) -> dict:
    """Latest run per job type and schedule settings, JSON-ready.

    Args:
        manager: Batch manager to query
        history: Also include this many most recent runs (0 for none)
    """
    latest = await manager.get_latest_runs_by_job_type()
    configs = await manager.get_batch_config()
    report = {
        "latest_runs": {
            job_type: BatchRunSchema.model_validate(run).model_dump(mode="json", exclude={"log_text"})
            for job_type, run in latest.items()
        },
        "config": [BatchConfigSchema.model_validate(c).model_dump(mode="json") for c in configs],
    }
    if history:
        runs = await manager.get_recent_runs(limit=history)
        report["recent_runs"] = [
            BatchRunSchema.model_validate(run).model_dump(mode="json", exclude={"log_text"})
            for run in runs
        ]
    return report


async def show_status(history: int = 0) -> int:
    async with lifespan(start_scheduler=False, sweep_stale_runs=False) as app:
        report = await build_status_report(app.batch_manager, history)
    print(json.dumps(report, indent=2))
    return 0


async def show_log(run_id: int) -> int:
    async with lifespan(start_scheduler=False, sweep_stale_runs=False) as app:
        run = await app.batch_manager.get_run(run_id)
    if run is None:
        print(f"Run {run_id} not found")
        return 1
    print(run.log_text)
    return 0


async def prune(days: int) -> int:
    async with lifespan(start_scheduler=False, sweep_stale_runs=False) as app:
        deleted = await app.batch_manager.prune_runs(timedelta(days=days))
    print(f"Deleted {deleted} run(s) older than {days} day(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docked", description="Container image update detection and batch jobs"
    )
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level (default: %(default)s)")
    subcommands = parser.add_subparsers(dest="command")

    run_parser = subcommands.add_parser("run", help="Run one batch job now and exit")
    run_parser.add_argument(
        "job_type",
        choices=[ImageUpdateCheckHandler.job_type, TrackedAppsCheckHandler.job_type],
        help="Job type to run",
    )

    status_parser = subcommands.add_parser("status", help="Print latest runs and schedules as JSON")
    status_parser.add_argument(
        "--history", type=int, default=0, metavar="N", help="Include the N most recent runs"
    )

    log_parser = subcommands.add_parser("log", help="Print the log of one run")
    log_parser.add_argument("run_id", type=int)

    prune_parser = subcommands.add_parser("prune", help="Delete old finished runs")
    prune_parser.add_argument(
        "--days",
        type=int,
        default=RUN_RETENTION_DAYS,
        help="Keep runs started within this many days (default: %(default)s)",
    )
    return parser


def run(argv: Optional[list[str]] = None) -> int:
    """Console entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper())

    try:
        if args.command == "run":
            return asyncio.run(run_once(args.job_type))
        if args.command == "status":
            return asyncio.run(show_status(args.history))
        if args.command == "log":
            return asyncio.run(show_log(args.run_id))
        if args.command == "prune":
            return asyncio.run(prune(args.days))
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(run())
