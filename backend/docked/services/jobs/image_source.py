"""Sources of the images and apps the batch jobs check.

The orchestration side (container enumeration) is outside this package;
it writes deployed_images, and these sources read it back.
"""

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docked.models.deployed_image import DeployedImage
from docked.models.tracked_app import TrackedApp
from docked.services.db_queue import DatabaseOperationQueue


class DeployedImageSource(Protocol):
    async def list_images(self) -> list[DeployedImage]: ...


class TrackedAppSource(Protocol):
    async def list_apps(self) -> list[TrackedApp]: ...


class DatabaseImageSource:
    """Deployed images from the deployed_images table."""

    def __init__(self, db_queue: DatabaseOperationQueue) -> None:
        self.db_queue = db_queue

    async def list_images(self) -> list[DeployedImage]:
        async def load(db: AsyncSession) -> list[DeployedImage]:
            result = await db.execute(select(DeployedImage).order_by(DeployedImage.id))
            return list(result.scalars().all())

        return await self.db_queue.submit(load)


class DatabaseTrackedAppSource:
    """Tracked applications from the tracked_apps table."""

    def __init__(self, db_queue: DatabaseOperationQueue) -> None:
        self.db_queue = db_queue

    async def list_apps(self) -> list[TrackedApp]:
        async def load(db: AsyncSession) -> list[TrackedApp]:
            result = await db.execute(select(TrackedApp).order_by(TrackedApp.id))
            return list(result.scalars().all())

        return await self.db_queue.submit(load)
