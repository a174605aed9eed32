"""Pydantic schemas for batch runs and their configuration."""

from datetime import datetime

from pydantic import BaseModel, Field

from docked.config import MAX_INTERVAL_MINUTES, MIN_INTERVAL_MINUTES


class BatchRunSchema(BaseModel):
    """Batch run as reported to status pollers."""

    id: int
    job_type: str
    status: str
    is_manual: bool
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    checked_count: int = 0
    updated_count: int = 0
    error_message: str | None = None
    log_text: str = ""

    model_config = {"from_attributes": True}


class BatchConfigSchema(BaseModel):
    """Schedule settings of one job type."""

    job_type: str
    enabled: bool
    interval_minutes: int
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class BatchConfigUpdate(BaseModel):
    """Partial update of a job type's schedule."""

    enabled: bool | None = None
    interval_minutes: int | None = Field(
        default=None, ge=MIN_INTERVAL_MINUTES, le=MAX_INTERVAL_MINUTES
    )

