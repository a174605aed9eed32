"""Batch job: check every deployed image against its registry."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from docked.config import CHECK_CONCURRENCY, IMAGE_CHECK_TIMEOUT
from docked.exceptions import RateLimitExceededError, RegistryError
from docked.models.deployed_image import DeployedImage
from docked.services.db_queue import DatabaseOperationQueue
from docked.services.event_bus import EVENT_IMAGE_UPDATE
from docked.services.jobs.base import JobContext, JobHandler, JobResult
from docked.services.jobs.image_source import DeployedImageSource
from docked.services.registry.base import DigestResult
from docked.services.registry_rate_limiter import RateLimitedRequest, RegistryRateLimiter
from docked.utils.image_ref import parse_image_reference

logger = logging.getLogger(__name__)

JOB_TYPE = "docker-hub-pull"


class ImageUpdateCheckHandler(JobHandler):
    """Resolve the latest digest of each deployed image and flag updates.

    Lookups run concurrently, bounded per provider by a RegistryRateLimiter.
    A failed lookup is recorded on the image and the run moves on. Once the
    registry signals RateLimitExceededError no further lookups are started
    and the run completes with what it has.
    """

    job_type = JOB_TYPE
    display_name = "Image update check"

    def __init__(
        self,
        source: DeployedImageSource,
        concurrency: int = CHECK_CONCURRENCY,
        check_timeout: float = IMAGE_CHECK_TIMEOUT,
    ) -> None:
        self.source = source
        self.concurrency = concurrency
        self.check_timeout = check_timeout

    @staticmethod
    async def _save(db_queue: DatabaseOperationQueue, image_id: int, values: dict[str, Any]) -> None:
        async def write(db: AsyncSession) -> None:
            await db.execute(
                update(DeployedImage)
                .where(DeployedImage.id == image_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        await db_queue.submit(write)

    async def execute(self, context: JobContext) -> JobResult:
        log = context.logger
        registry = context.registry

        images = await self.source.list_images()
        total = len(images)
        log.info(f"Checking {total} deployed images", concurrency=self.concurrency)

        limiter = RegistryRateLimiter(global_concurrency=self.concurrency)
        checked_count = 0
        updated_count = 0
        errors_count = 0
        rate_limited: Optional[RateLimitExceededError] = None
        details: list[dict[str, Any]] = []

        async def check_image(image: DeployedImage) -> None:
            nonlocal checked_count, updated_count, errors_count, rate_limited

            if rate_limited is not None:
                return

            try:
                ref = parse_image_reference(image.image)
            except ValueError as e:
                errors_count += 1
                log.warning(f"Skipping {image.image!r}: {e}", image_id=image.id)
                await self._save(context.db_queue, image.id, {"last_error": str(e)})
                return

            if ref.digest:
                log.debug(f"Skipping digest-pinned image {image.image}")
                return

            provider = registry.get_provider(ref.image_repo)
            result: Optional[DigestResult] = None
            error: Optional[str] = None

            async with RateLimitedRequest(limiter, provider.name):
                if rate_limited is not None:
                    return
                try:
                    result = await asyncio.wait_for(
                        registry.get_latest_digest(
                            ref.image_repo,
                            ref.tag,
                            user_id=image.user_id,
                            github_repo=image.github_repo,
                        ),
                        timeout=self.check_timeout,
                    )
                except RateLimitExceededError as e:
                    if rate_limited is None:
                        rate_limited = e
                        log.error(
                            "Registry rate limit exceeded, stopping further lookups",
                            image=str(ref),
                            registry=e.registry,
                        )
                    error = e.describe()
                except RegistryError as e:
                    error = e.describe()
                except asyncio.TimeoutError:
                    error = f"Lookup timed out after {self.check_timeout:.0f}s"
                except httpx.HTTPError as e:
                    error = f"HTTP error: {e}"
                except Exception as e:
                    # One image must not fail the whole run
                    logger.error(f"Unexpected error checking {ref}: {e}", exc_info=True)
                    error = f"Unexpected error: {e.__class__.__name__}: {e}"

            checked_count += 1
            now = datetime.now(UTC)

            if error is not None:
                errors_count += 1
                log.warning(f"Check failed for {ref}: {error}", provider=provider.name)
                await self._save(
                    context.db_queue, image.id, {"last_checked_at": now, "last_error": error}
                )
                details.append({"image": str(ref), "error": error})
                return

            if result is None:
                # Fallback came back empty: status unknown, not "no update"
                message = "Update status unknown: no registry or release data"
                log.info(f"{ref}: {message}")
                await self._save(
                    context.db_queue, image.id, {"last_checked_at": now, "last_error": message}
                )
                details.append({"image": str(ref), "error": message})
                return

            has_update = registry.has_update(image.current_digest, ref.tag, result)
            await self._save(
                context.db_queue,
                image.id,
                {
                    "latest_digest": result.digest,
                    "latest_tag": result.tag,
                    "latest_version": result.version,
                    "provider": result.provider_name,
                    "is_fallback": result.is_fallback,
                    "has_update": has_update,
                    "last_checked_at": now,
                    "last_error": None,
                },
            )
            details.append(
                {
                    "image": str(ref),
                    "provider": result.provider_name,
                    "has_update": has_update,
                    "is_fallback": result.is_fallback,
                }
            )

            if has_update:
                updated_count += 1
                log.info(
                    f"Update available for {ref}",
                    provider=result.provider_name,
                    latest=result.version or result.digest,
                )
                if not image.has_update:
                    await context.publish(
                        EVENT_IMAGE_UPDATE,
                        image_id=image.id,
                        image=str(ref),
                        container_name=image.container_name,
                        current_digest=image.current_digest,
                        latest_digest=result.digest,
                        latest_version=result.version,
                        provider=result.provider_name,
                    )

        await asyncio.gather(*(check_image(image) for image in images))

        log.info(
            f"Checked {checked_count}/{total} images, {updated_count} with updates, "
            f"{errors_count} errors",
            rate_limiter=limiter.get_metrics(),
        )

        error_message = None
        if rate_limited is not None:
            error_message = (
                f"Registry rate limit exceeded. Processed {checked_count} of {total} images. "
                "Configure registry credentials or wait before retrying."
            )

        return JobResult(
            checked_count=checked_count,
            updated_count=updated_count,
            error_message=error_message,
            partial=rate_limited is not None,
            details=details,
        )
