"""Batch manager: the trigger boundary for batch jobs.

Starts runs under the per-job-type lock, executes handlers, records the
terminal transition and publishes run events. Owns the interval scheduler.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from docked.config import STARTUP_STALE_THRESHOLD
from docked.exceptions import UnknownJobTypeError
from docked.models.batch_config import BatchConfig
from docked.models.batch_run import RUN_STATUS_COMPLETED, RUN_STATUS_FAILED, BatchRun
from docked.services import metrics
from docked.services.batch_logger import BatchLogger
from docked.services.batch_service import BatchService
from docked.services.db_queue import DatabaseOperationQueue
from docked.services.event_bus import (
    EVENT_RUN_COMPLETED,
    EVENT_RUN_FAILED,
    EVENT_RUN_STARTED,
    EventBus,
)
from docked.services.jobs.base import JobContext, JobHandler, JobResult

if TYPE_CHECKING:
    from docked.services.registry.manager import RegistryManager
    from docked.services.scheduler import BatchScheduler

logger = logging.getLogger(__name__)


@dataclass
class StartJobResult:
    """Answer to start_job: the new run, or the run already holding the lock."""

    run_id: int
    job_type: str
    already_running: bool = False

    @property
    def message(self) -> str:
        if self.already_running:
            return f"{self.job_type} is already running (run {self.run_id})"
        return f"{self.job_type} started (run {self.run_id})"


@dataclass
class JobOutcome:
    """Result of an awaited run."""

    run_id: int
    job_type: str
    already_running: bool = False
    status: Optional[str] = None
    result: Optional[JobResult] = None
    run: Optional[BatchRun] = None


class BatchManager:
    """Registry of job handlers and entry point for starting runs."""

    def __init__(
        self,
        registry: "RegistryManager",
        db_queue: DatabaseOperationQueue,
        event_bus: Optional[EventBus] = None,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self.registry = registry
        self.db_queue = db_queue
        self.event_bus = event_bus
        self.shutdown_timeout = shutdown_timeout
        self.scheduler: Optional["BatchScheduler"] = None
        self._handlers: dict[str, JobHandler] = {}
        self._running: dict[str, tuple[int, asyncio.Task]] = {}

    # Handlers

    def register_handler(self, handler: JobHandler) -> None:
        if not handler.job_type:
            raise ValueError(f"{handler!r} has no job_type")
        if handler.job_type in self._handlers:
            raise ValueError(f"Handler already registered for job type: {handler.job_type}")
        self._handlers[handler.job_type] = handler
        logger.info(f"Registered batch job handler: {handler.job_type}")

    @property
    def registered_job_types(self) -> list[str]:
        return list(self._handlers)

    def get_handler(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def is_running(self, job_type: str) -> bool:
        """Whether a run of job_type is executing in this process."""
        return job_type in self._running

    # Execution

    async def _begin(self, job_type: str, is_manual: bool) -> tuple[JobHandler, StartJobResult]:
        handler = self.get_handler(job_type)
        lock = await self.db_queue.submit(
            lambda db: BatchService.start_run(db, job_type, is_manual)
        )
        if lock.reaped_run_id is not None:
            logger.warning(f"Recovered stale {job_type} run {lock.reaped_run_id}")
        return handler, StartJobResult(
            run_id=lock.run_id, job_type=job_type, already_running=lock.already_running
        )

    async def start_job(self, job_type: str, is_manual: bool = False) -> StartJobResult:
        """Start a run in the background.

        Returns:
            StartJobResult; already_running is True when another run holds
            the lock, and run_id is that run

        Raises:
            UnknownJobTypeError: If no handler is registered for job_type
        """
        handler, started = await self._begin(job_type, is_manual)
        if started.already_running:
            return started

        task = asyncio.create_task(
            self._execute(started.run_id, handler, is_manual), name=f"batch:{job_type}"
        )
        self._running[job_type] = (started.run_id, task)
        task.add_done_callback(lambda t: self._on_task_done(job_type, t))
        return started

    def _on_task_done(self, job_type: str, task: asyncio.Task) -> None:
        self._running.pop(job_type, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Background {job_type} run could not be recorded: {task.exception()}"
            )

    async def run_job(self, job_type: str, is_manual: bool = False) -> JobOutcome:
        """Start a run and wait for it to finish."""
        handler, started = await self._begin(job_type, is_manual)
        if started.already_running:
            return JobOutcome(run_id=started.run_id, job_type=job_type, already_running=True)

        task = asyncio.current_task()
        self._running[job_type] = (started.run_id, task)
        try:
            return await self._execute(started.run_id, handler, is_manual)
        finally:
            self._running.pop(job_type, None)

    async def _execute(self, run_id: int, handler: JobHandler, is_manual: bool) -> JobOutcome:
        job_type = handler.job_type
        batch_logger = BatchLogger(job_type, run_id)
        context = JobContext(
            run_id=run_id,
            job_type=job_type,
            is_manual=is_manual,
            logger=batch_logger,
            registry=self.registry,
            db_queue=self.db_queue,
            event_bus=self.event_bus,
        )

        await context.publish(EVENT_RUN_STARTED, is_manual=is_manual)
        batch_logger.info(f"Starting {handler.display_name or job_type}", manual=is_manual)
        started = time.monotonic()

        result: Optional[JobResult] = None
        try:
            result = await handler.execute(context)
            status = RUN_STATUS_COMPLETED
            error_message = result.error_message
        except Exception as e:
            # Any handler failure fails the run; the error is recorded on it
            logger.error(f"Batch job {job_type} run {run_id} failed: {e}", exc_info=True)
            batch_logger.error(f"Job failed: {e}")
            status = RUN_STATUS_FAILED
            error_message = str(e) or e.__class__.__name__

        checked = result.checked_count if result else 0
        updated = result.updated_count if result else 0
        batch_logger.info(f"Finished with status {status}", checked=checked, updated=updated)

        run = await self.db_queue.submit(
            lambda db: BatchService.complete_run(
                db,
                run_id,
                status,
                checked_count=checked,
                updated_count=updated,
                error_message=error_message,
                log_text=batch_logger.format(),
            )
        )

        metrics.batch_runs_total.labels(job_type=job_type, status=status).inc()
        metrics.batch_run_duration.labels(job_type=job_type).observe(time.monotonic() - started)
        metrics.batch_items_checked.labels(job_type=job_type).inc(checked)
        metrics.batch_updates_found.labels(job_type=job_type).inc(updated)

        await context.publish(
            EVENT_RUN_COMPLETED if status == RUN_STATUS_COMPLETED else EVENT_RUN_FAILED,
            checked_count=checked,
            updated_count=updated,
            error_message=error_message,
            log_text=run.log_text,
            duration_ms=run.duration_ms,
        )
        return JobOutcome(run_id=run_id, job_type=job_type, status=status, result=result, run=run)

    # Lifecycle

    async def cleanup_stale_runs(self, older_than: timedelta = STARTUP_STALE_THRESHOLD) -> int:
        return await self.db_queue.submit(
            lambda db: BatchService.cleanup_stale_runs(db, older_than=older_than)
        )

    async def prune_runs(self, older_than: timedelta) -> int:
        """Delete finished runs older than older_than. Returns the count."""
        deleted = await self.db_queue.submit(
            lambda db: BatchService.prune_runs(db, older_than=older_than)
        )
        if deleted:
            logger.info(f"Pruned {deleted} batch run(s) older than {older_than}")
        return deleted

    async def start(self) -> None:
        """Start the interval scheduler for the registered job types."""
        from docked.services.scheduler import BatchScheduler

        if self.scheduler is None:
            self.scheduler = BatchScheduler(self)
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop scheduling and wait for in-flight runs.

        Runs still going after shutdown_timeout are left to the stale-run
        sweep of the next start.
        """
        if self.scheduler is not None:
            await self.scheduler.stop()

        tasks = [task for _, task in self._running.values() if task is not asyncio.current_task()]
        if tasks:
            logger.info(f"Waiting for {len(tasks)} running batch job(s) to finish")
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(f"{len(pending)} batch job(s) still running at shutdown")

    def get_status(self) -> dict[str, Any]:
        return {
            "registered_jobs": [
                {"job_type": h.job_type, "display_name": h.display_name}
                for h in self._handlers.values()
            ],
            "running_jobs": {job_type: run_id for job_type, (run_id, _) in self._running.items()},
            "scheduler": self.scheduler.get_status() if self.scheduler else {"running": False},
        }

    # Queries

    async def get_run(self, run_id: int) -> Optional[BatchRun]:
        return await self.db_queue.submit(lambda db: BatchService.get_run(db, run_id))

    async def get_latest_run(self, job_type: Optional[str] = None) -> Optional[BatchRun]:
        return await self.db_queue.submit(lambda db: BatchService.get_latest_run(db, job_type))

    async def get_recent_runs(self, limit: int = 50) -> list[BatchRun]:
        return await self.db_queue.submit(lambda db: BatchService.get_recent_runs(db, limit))

    async def get_latest_runs_by_job_type(self) -> dict[str, BatchRun]:
        return await self.db_queue.submit(BatchService.get_latest_runs_by_job_type)

    # Schedule configuration

    async def get_batch_config(self, job_type: Optional[str] = None) -> list[BatchConfig]:
        return await self.db_queue.submit(lambda db: BatchService.get_batch_config(db, job_type))

    async def update_batch_config(
        self,
        job_type: str,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
    ) -> BatchConfig:
        """Persist new schedule settings and apply them to the scheduler."""
        self.get_handler(job_type)
        config = await self.db_queue.submit(
            lambda db: BatchService.update_batch_config(db, job_type, enabled, interval_minutes)
        )
        if self.scheduler is not None and self.scheduler.running:
            await self.scheduler.reload_schedule()
        return config
