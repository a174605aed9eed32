"""Database models for Docked."""

from docked.models.batch_run import BatchRun
from docked.models.batch_config import BatchConfig
from docked.models.deployed_image import DeployedImage
from docked.models.tracked_app import TrackedApp

__all__ = [
    "BatchRun",
    "BatchConfig",
    "DeployedImage",
    "TrackedApp",
]
