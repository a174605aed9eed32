"""Batch job: compare tracked applications with their latest releases."""

import logging
from datetime import UTC, datetime
from typing import Any, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from docked.exceptions import RegistryError, RegistryRateLimitError
from docked.models.tracked_app import TrackedApp
from docked.services.db_queue import DatabaseOperationQueue
from docked.services.event_bus import EVENT_TRACKED_APP_UPDATE
from docked.services.jobs.base import JobContext, JobHandler, JobResult
from docked.services.jobs.image_source import TrackedAppSource
from docked.services.update_comparator import normalize_version, version_has_update
from docked.utils.image_ref import parse_image_reference

logger = logging.getLogger(__name__)

JOB_TYPE = "tracked-apps-check"


class TrackedAppsCheckHandler(JobHandler):
    """Check tracked apps one by one.

    Apps with a GitHub repository are compared by release version. Apps that
    only name an image are compared by registry digest, or by version when
    the registry answered through the releases fallback.
    """

    job_type = JOB_TYPE
    display_name = "Tracked apps check"

    def __init__(self, source: TrackedAppSource) -> None:
        self.source = source

    @staticmethod
    async def _save(db_queue: DatabaseOperationQueue, app_id: int, values: dict[str, Any]) -> None:
        async def write(db: AsyncSession) -> None:
            await db.execute(
                update(TrackedApp)
                .where(TrackedApp.id == app_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        await db_queue.submit(write)

    async def _check_release(self, context: JobContext, app: TrackedApp) -> dict[str, Any]:
        release = await context.registry.github.get_latest_release(app.github_repo)
        if release is None:
            return {"latest_version": None, "has_update": False, "last_error": "No releases found"}
        return {
            "latest_version": release.tag_name,
            "has_update": version_has_update(app.current_version, release.tag_name),
            "last_error": None,
        }

    async def _check_image(self, context: JobContext, app: TrackedApp) -> dict[str, Any]:
        ref = parse_image_reference(app.image)
        result = await context.registry.get_latest_digest(
            ref.image_repo, ref.tag, user_id=app.user_id
        )
        if result is None:
            return {"has_update": False, "last_error": "Update status unknown"}

        if result.is_fallback:
            has_update = context.registry.has_update(None, app.current_version or ref.tag, result)
        elif app.current_digest:
            has_update = context.registry.has_update(app.current_digest, ref.tag, result)
        else:
            # Nothing to compare against yet; record the digest only
            has_update = False

        values: dict[str, Any] = {
            "latest_digest": result.digest,
            "has_update": has_update,
            "last_error": None,
        }
        if result.version:
            values["latest_version"] = result.version
        return values

    async def execute(self, context: JobContext) -> JobResult:
        log = context.logger
        apps = await self.source.list_apps()
        log.info(f"Checking {len(apps)} tracked apps")

        checked_count = 0
        updated_count = 0
        rate_limited: Optional[RegistryRateLimitError] = None
        details: list[dict[str, Any]] = []

        for app in apps:
            if not app.github_repo and not app.image:
                log.warning(f"Tracked app {app.name} has neither repository nor image", app_id=app.id)
                continue

            try:
                if app.github_repo:
                    values = await self._check_release(context, app)
                else:
                    values = await self._check_image(context, app)
            except RegistryRateLimitError as e:
                rate_limited = e
                log.error(f"Rate limited while checking {app.name}, stopping", registry=e.registry)
                break
            except Exception as e:
                checked_count += 1
                if isinstance(e, RegistryError):
                    message = e.describe()
                elif isinstance(e, (httpx.HTTPError, ValueError)):
                    message = str(e)
                else:
                    logger.error(f"Unexpected error checking {app.name}: {e}", exc_info=True)
                    message = f"Unexpected error: {e.__class__.__name__}: {e}"
                log.warning(f"Check failed for {app.name}: {message}", app_id=app.id)
                await self._save(
                    context.db_queue,
                    app.id,
                    {"last_checked_at": datetime.now(UTC), "last_error": message},
                )
                details.append({"app": app.name, "error": message})
                continue

            checked_count += 1
            values["last_checked_at"] = datetime.now(UTC)
            await self._save(context.db_queue, app.id, values)
            details.append({"app": app.name, "has_update": values["has_update"]})

            if values["has_update"]:
                updated_count += 1
                latest = values.get("latest_version") or values.get("latest_digest")
                log.info(f"Update available for {app.name}: {app.current_version} -> {latest}")
                if not app.has_update:
                    await context.publish(
                        EVENT_TRACKED_APP_UPDATE,
                        app_id=app.id,
                        name=app.name,
                        current_version=app.current_version,
                        latest_version=values.get("latest_version"),
                        latest_digest=values.get("latest_digest"),
                    )
            elif values.get("latest_version") and normalize_version(
                values["latest_version"]
            ) == normalize_version(app.current_version):
                log.debug(f"{app.name} is up to date ({app.current_version})")

        error_message = None
        if rate_limited is not None:
            error_message = (
                f"Rate limit exceeded. Processed {checked_count} of {len(apps)} tracked apps. "
                "Set GITHUB_TOKEN or wait before retrying."
            )

        return JobResult(
            checked_count=checked_count,
            updated_count=updated_count,
            error_message=error_message,
            partial=rate_limited is not None,
            details=details,
        )
