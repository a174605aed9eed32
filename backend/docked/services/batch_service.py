"""Batch run persistence: job locks, run lifecycle, history and schedule config.

Every method takes the session it should work in. Callers run them through
the DatabaseOperationQueue so no two write transactions interleave.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docked.config import LOCK_STALE_THRESHOLD, STARTUP_STALE_THRESHOLD
from docked.exceptions import BatchRunNotFoundError, BatchRunStateError
from docked.models.batch_config import BatchConfig
from docked.models.batch_run import (
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    TERMINAL_STATUSES,
    BatchRun,
)
from docked.schemas.batch import BatchConfigUpdate

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Job was interrupted (likely a process restart). Original start: {started}"


@dataclass
class LockAcquisition:
    """Result of a lock attempt.

    Attributes:
        acquired: Whether the caller now holds the lock for the job type
        run_id: The new run when started through start_run, or the run
            already holding the lock when not acquired
        reaped_run_id: Stale run that was force-failed to free the lock
    """

    acquired: bool
    run_id: Optional[int] = None
    reaped_run_id: Optional[int] = None

    @property
    def already_running(self) -> bool:
        return not self.acquired


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _duration_ms(started_at: datetime, ended_at: datetime) -> int:
    return max(0, int((ended_at - as_utc(started_at)).total_seconds() * 1000))


def _running_clause(job_type: Optional[str] = None):
    clauses = [BatchRun.status == RUN_STATUS_RUNNING, BatchRun.completed_at.is_(None)]
    if job_type is not None:
        clauses.append(BatchRun.job_type == job_type)
    return clauses


class BatchService:
    """Batch run lock and lifecycle operations."""

    @staticmethod
    async def _fail_if_running(
        db: AsyncSession, run: BatchRun, now: datetime, message: str
    ) -> bool:
        """Force-fail run if it is still running. True if this call did it.

        The UPDATE is conditional on the running state, so two callers
        racing for the same row cannot both transition it.
        """
        result = await db.execute(
            update(BatchRun)
            .where(BatchRun.id == run.id, *_running_clause())
            .values(
                status=RUN_STATUS_FAILED,
                completed_at=now,
                duration_ms=_duration_ms(run.started_at, now),
                error_message=message,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def acquire_lock(
        db: AsyncSession,
        job_type: str,
        *,
        stale_after: timedelta = LOCK_STALE_THRESHOLD,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> LockAcquisition:
        """Try to take the execution lock for job_type.

        A running row older than stale_after is considered abandoned by a
        crashed process: it is marked failed and the lock is granted.

        Args:
            db: Database session
            job_type: Job type to lock
            stale_after: Age after which a running row is reaped
            now: Current time (tests)
            commit: Commit the transaction before returning. start_run
                passes False so the new row is inserted in the same
                transaction.

        Returns:
            LockAcquisition; when not acquired, run_id is the holder
        """
        now = now or datetime.now(UTC)
        result = await db.execute(
            select(BatchRun)
            .where(*_running_clause(job_type))
            .order_by(BatchRun.started_at.desc(), BatchRun.id.desc())
            .with_for_update()
        )
        running = list(result.scalars().all())

        holder: Optional[BatchRun] = None
        reaped_run_id: Optional[int] = None
        for run in running:
            started = as_utc(run.started_at)
            if now - started <= stale_after:
                if holder is None:
                    holder = run
                continue

            message = INTERRUPTED_MESSAGE.format(started=started.isoformat())
            if await BatchService._fail_if_running(db, run, now, message):
                reaped_run_id = run.id
                logger.warning(
                    f"Reaped stale {job_type} run {run.id} (started {started.isoformat()})"
                )

        if commit:
            await db.commit()

        if holder is not None:
            logger.info(f"Job {job_type} already running as run {holder.id}")
            return LockAcquisition(acquired=False, run_id=holder.id, reaped_run_id=reaped_run_id)

        return LockAcquisition(acquired=True, reaped_run_id=reaped_run_id)

    @staticmethod
    async def start_run(
        db: AsyncSession,
        job_type: str,
        is_manual: bool = False,
        *,
        stale_after: timedelta = LOCK_STALE_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> LockAcquisition:
        """Acquire the lock and insert the running row in one transaction.

        Returns:
            LockAcquisition with run_id set to the new run, or to the run
            already holding the lock
        """
        now = now or datetime.now(UTC)
        lock = await BatchService.acquire_lock(
            db, job_type, stale_after=stale_after, now=now, commit=False
        )
        if not lock.acquired:
            await db.commit()
            return lock

        run = BatchRun(
            job_type=job_type,
            status=RUN_STATUS_RUNNING,
            is_manual=is_manual,
            started_at=now,
            checked_count=0,
            updated_count=0,
            log_text="",
        )
        db.add(run)
        await db.flush()
        run_id = run.id
        await db.commit()

        logger.info(f"Started {job_type} run {run_id} ({'manual' if is_manual else 'scheduled'})")
        return LockAcquisition(acquired=True, run_id=run_id, reaped_run_id=lock.reaped_run_id)

    @staticmethod
    async def complete_run(
        db: AsyncSession,
        run_id: int,
        status: str,
        *,
        checked_count: int = 0,
        updated_count: int = 0,
        error_message: Optional[str] = None,
        log_text: str = "",
        now: Optional[datetime] = None,
    ) -> BatchRun:
        """Record the terminal transition of a run and release its lock.

        Raises:
            BatchRunStateError: If status is not terminal, or the run has
                already finished
            BatchRunNotFoundError: If run_id does not exist
        """
        if status not in TERMINAL_STATUSES:
            raise BatchRunStateError(f"{status!r} is not a terminal run status")

        run = await db.get(BatchRun, run_id)
        if run is None:
            raise BatchRunNotFoundError(run_id)
        if run.is_terminal:
            raise BatchRunStateError(f"Batch run {run_id} is already {run.status}")

        now = now or datetime.now(UTC)
        result = await db.execute(
            update(BatchRun)
            .where(BatchRun.id == run_id, *_running_clause())
            .values(
                status=status,
                completed_at=now,
                duration_ms=_duration_ms(run.started_at, now),
                checked_count=checked_count,
                updated_count=updated_count,
                error_message=error_message,
                log_text=log_text,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise BatchRunStateError(f"Batch run {run_id} was finished by another writer")

        await db.commit()
        await db.refresh(run)
        logger.info(
            f"Run {run_id} ({run.job_type}) {status}: checked={checked_count} "
            f"updated={updated_count} in {run.duration_ms}ms"
        )
        return run

    @staticmethod
    async def cleanup_stale_runs(
        db: AsyncSession,
        older_than: timedelta = STARTUP_STALE_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> int:
        """Fail every running row older than older_than. Run at startup.

        Returns:
            Number of runs marked failed
        """
        now = now or datetime.now(UTC)
        result = await db.execute(select(BatchRun).where(*_running_clause()))
        count = 0
        for run in result.scalars().all():
            started = as_utc(run.started_at)
            if now - started <= older_than:
                continue
            message = INTERRUPTED_MESSAGE.format(started=started.isoformat())
            if await BatchService._fail_if_running(db, run, now, message):
                count += 1
                logger.warning(f"Startup cleanup: failed stale {run.job_type} run {run.id}")

        await db.commit()
        if count:
            logger.info(f"Startup cleanup marked {count} stale run(s) as failed")
        return count

    @staticmethod
    async def prune_runs(db: AsyncSession, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Delete finished runs that started more than older_than ago."""
        cutoff = (now or datetime.now(UTC)) - older_than
        result = await db.execute(
            delete(BatchRun)
            .where(BatchRun.status.in_(TERMINAL_STATUSES), BatchRun.started_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0

    # Read side. Plain reads, no locking.

    @staticmethod
    async def get_run(db: AsyncSession, run_id: int) -> Optional[BatchRun]:
        return await db.get(BatchRun, run_id)

    @staticmethod
    async def get_recent_runs(db: AsyncSession, limit: int = 50) -> list[BatchRun]:
        result = await db.execute(
            select(BatchRun).order_by(BatchRun.started_at.desc(), BatchRun.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_latest_run(db: AsyncSession, job_type: Optional[str] = None) -> Optional[BatchRun]:
        query = select(BatchRun)
        if job_type is not None:
            query = query.where(BatchRun.job_type == job_type)
        result = await db.execute(
            query.order_by(BatchRun.started_at.desc(), BatchRun.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_completed_run(db: AsyncSession, job_type: str) -> Optional[BatchRun]:
        result = await db.execute(
            select(BatchRun)
            .where(BatchRun.job_type == job_type, BatchRun.completed_at.is_not(None))
            .order_by(BatchRun.completed_at.desc(), BatchRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_runs_by_job_type(db: AsyncSession) -> dict[str, BatchRun]:
        """Most recent run of every job type that has run at least once."""
        latest_ids = select(func.max(BatchRun.id)).group_by(BatchRun.job_type)
        result = await db.execute(select(BatchRun).where(BatchRun.id.in_(latest_ids)))
        return {run.job_type: run for run in result.scalars().all()}

    # Schedule configuration

    @staticmethod
    async def get_batch_config(db: AsyncSession, job_type: Optional[str] = None) -> list[BatchConfig]:
        """Schedule settings for all job types, or only job_type."""
        query = select(BatchConfig).order_by(BatchConfig.job_type)
        if job_type is not None:
            query = query.where(BatchConfig.job_type == job_type)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def ensure_batch_configs(
        db: AsyncSession, defaults: dict[str, tuple[bool, int]]
    ) -> list[BatchConfig]:
        """Insert settings for job types that have none yet.

        Args:
            db: Database session
            defaults: job_type -> (enabled, interval_minutes) for new rows
        """
        existing = {c.job_type: c for c in await BatchService.get_batch_config(db)}
        created = False
        for job_type, (enabled, interval_minutes) in defaults.items():
            if job_type not in existing:
                config = BatchConfig(
                    job_type=job_type, enabled=enabled, interval_minutes=interval_minutes
                )
                db.add(config)
                existing[job_type] = config
                created = True
        if created:
            await db.commit()
        return [existing[job_type] for job_type in defaults]

    @staticmethod
    async def update_batch_config(
        db: AsyncSession,
        job_type: str,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
    ) -> BatchConfig:
        """Change the schedule of job_type, creating its settings if needed.

        Raises:
            pydantic.ValidationError: If interval_minutes is outside 1..1440
        """
        changes = BatchConfigUpdate(enabled=enabled, interval_minutes=interval_minutes)

        config = await db.get(BatchConfig, job_type)
        if config is None:
            config = BatchConfig(job_type=job_type)
            db.add(config)

        if changes.enabled is not None:
            config.enabled = changes.enabled
        if changes.interval_minutes is not None:
            config.interval_minutes = changes.interval_minutes
        config.updated_at = datetime.now(UTC)

        await db.commit()
        await db.refresh(config)
        logger.info(
            f"Batch config for {job_type}: enabled={config.enabled} "
            f"interval={config.interval_minutes}m"
        )
        return config
