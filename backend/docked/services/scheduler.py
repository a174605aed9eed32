"""Interval scheduler driving the batch jobs."""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from docked.exceptions import UnknownJobTypeError
from docked.models.batch_config import BatchConfig
from docked.services.batch_service import BatchService, as_utc

if TYPE_CHECKING:
    from docked.services.batch_manager import BatchManager

logger = logging.getLogger(__name__)


def job_id_for(job_type: str) -> str:
    return f"batch:{job_type}"


class BatchScheduler:
    """Runs each enabled job type every ``interval_minutes``.

    The first run after a start is due one interval after the latest
    completed run, or immediately if there is none or it is overdue.
    """

    def __init__(self, manager: "BatchManager") -> None:
        self.manager = manager
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._configs: dict[str, BatchConfig] = {}

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def _load_configs(self) -> list[BatchConfig]:
        defaults: dict[str, tuple[bool, int]] = {}
        for job_type in self.manager.registered_job_types:
            handler = self.manager.get_handler(job_type)
            defaults[job_type] = (handler.default_enabled, handler.default_interval_minutes)
        return await self.manager.db_queue.submit(
            lambda db: BatchService.ensure_batch_configs(db, defaults)
        )

    async def next_run_time(
        self, job_type: str, interval_minutes: int, now: Optional[datetime] = None
    ) -> datetime:
        """When job_type is next due, based on its latest completed run."""
        now = now or datetime.now(UTC)
        last = await self.manager.db_queue.submit(
            lambda db: BatchService.get_latest_completed_run(db, job_type)
        )
        if last is None or last.completed_at is None:
            logger.info(f"No completed {job_type} run, scheduling now")
            return now

        due = as_utc(last.completed_at) + timedelta(minutes=interval_minutes)
        return max(due, now)

    async def _schedule(self, config: BatchConfig) -> None:
        next_run = await self.next_run_time(config.job_type, config.interval_minutes)
        handler = self.manager.get_handler(config.job_type)
        self.scheduler.add_job(
            self._run_scheduled,
            IntervalTrigger(minutes=config.interval_minutes),
            args=[config.job_type],
            id=job_id_for(config.job_type),
            name=handler.display_name or config.job_type,
            next_run_time=next_run,
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
        )
        logger.info(
            f"Scheduled {config.job_type} every {config.interval_minutes}m, "
            f"next run {next_run.isoformat()}"
        )

    async def start(self) -> None:
        if self.running:
            logger.warning("Batch scheduler already running")
            return

        try:
            configs = await self._load_configs()
        except SQLAlchemyError as e:
            logger.error(f"Database error loading batch config: {e}")
            raise

        self.scheduler = AsyncIOScheduler(timezone=UTC)
        self._configs = {}
        for config in configs:
            self._configs[config.job_type] = config
            if not config.enabled:
                logger.info(f"Batch job {config.job_type} is disabled")
                continue
            await self._schedule(config)

        self.scheduler.start()
        logger.info(f"Batch scheduler started with {len(self.scheduler.get_jobs())} job(s)")

    async def stop(self) -> None:
        if self.scheduler:
            try:
                self.scheduler.shutdown(wait=False)
                # Give event loop a chance to process shutdown
                await asyncio.sleep(0)
                logger.info("Batch scheduler stopped")
            except RuntimeError as e:
                logger.error(f"Scheduler shutdown error: {e}")
            self.scheduler = None

    async def reload_schedule(self) -> None:
        """Re-read batch_config and reschedule jobs whose settings changed."""
        if not self.running:
            return

        configs = await self._load_configs()
        for config in configs:
            previous = self._configs.get(config.job_type)
            self._configs[config.job_type] = config
            unchanged = (
                previous is not None
                and previous.enabled == config.enabled
                and previous.interval_minutes == config.interval_minutes
            )
            if unchanged:
                continue

            if config.enabled:
                await self._schedule(config)
            else:
                try:
                    self.scheduler.remove_job(job_id_for(config.job_type))
                    logger.info(f"Unscheduled disabled batch job {config.job_type}")
                except JobLookupError:
                    logger.debug(f"Batch job {config.job_type} was not scheduled")

    async def _run_scheduled(self, job_type: str) -> None:
        logger.info(f"Starting scheduled {job_type} run")
        try:
            outcome = await self.manager.run_job(job_type, is_manual=False)
        except UnknownJobTypeError as e:
            logger.error(f"Scheduled job has no handler: {e}")
            return
        except SQLAlchemyError as e:
            logger.error(f"Database error during scheduled {job_type} run: {e}")
            return

        if outcome.already_running:
            logger.info(f"Skipped scheduled {job_type}: run {outcome.run_id} in progress")

    def get_status(self) -> dict[str, Any]:
        jobs: dict[str, Any] = {}
        for job_type, config in self._configs.items():
            next_run = None
            if self.running:
                job = self.scheduler.get_job(job_id_for(job_type))
                next_run = job.next_run_time if job else None
            jobs[job_type] = {
                "enabled": config.enabled,
                "interval_minutes": config.interval_minutes,
                "next_run": next_run.isoformat() if next_run else None,
            }
        return {"running": self.running, "jobs": jobs}
