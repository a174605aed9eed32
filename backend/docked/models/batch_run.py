"""BatchRun model: one execution of a batch job."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docked.db import Base

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"

TERMINAL_STATUSES = (RUN_STATUS_COMPLETED, RUN_STATUS_FAILED)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BatchRun(Base):
    """History row for one batch job run.

    The row id doubles as the job lock token: while a row for a job type is
    ``running`` with no ``completed_at``, no other run of that type may start.
    Counts, error and log are written once, at the terminal transition.
    """

    __tablename__ = "batch_runs"
    __table_args__ = (
        Index("idx_batch_run_job_status", "job_type", "status"),
        Index("idx_batch_run_started_at", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String, nullable=False)

    # Status: running, completed, failed
    status: Mapped[str] = mapped_column(String, nullable=False, default=RUN_STATUS_RUNNING)
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    checked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    log_text: Mapped[str] = mapped_column(Text, nullable=False, default="")

    def __repr__(self) -> str:
        return f"<BatchRun(id={self.id}, job_type={self.job_type}, status={self.status})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
