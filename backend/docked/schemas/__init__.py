"""Pydantic schemas for Docked."""

from docked.schemas.batch import BatchConfigSchema, BatchConfigUpdate, BatchRunSchema

__all__ = [
    "BatchRunSchema",
    "BatchConfigSchema",
    "BatchConfigUpdate",
]
