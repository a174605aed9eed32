"""BatchConfig model: schedule settings per job type."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from docked.config import DEFAULT_INTERVAL_MINUTES
from docked.db import Base


class BatchConfig(Base):
    """Whether a job type runs on a timer, and how often."""

    __tablename__ = "batch_config"

    job_type: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    interval_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_INTERVAL_MINUTES
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchConfig(job_type={self.job_type}, enabled={self.enabled}, "
            f"interval={self.interval_minutes}m)>"
        )
