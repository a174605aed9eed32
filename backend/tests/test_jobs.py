"""Tests for batch job handlers (docked/services/jobs/).

Tests the two built-in jobs against a real in-memory database and a
mocked registry:
- Image update check: update detection, per-image errors (including
  unexpected ones), pinned images, rate limit stop with partial counts,
  update events
- Tracked apps check: release comparison, image digest comparison,
  skipped apps, per-app errors, rate limit stop
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import select

from docked.exceptions import RateLimitExceededError, RegistryAuthError, RegistryRateLimitError
from docked.models.deployed_image import DeployedImage
from docked.models.tracked_app import TrackedApp
from docked.services.batch_logger import BatchLogger
from docked.services.event_bus import EVENT_IMAGE_UPDATE, EVENT_TRACKED_APP_UPDATE, EventBus
from docked.services.github_service import GitHubRelease
from docked.services.jobs.base import JobContext
from docked.services.jobs.image_source import DatabaseImageSource, DatabaseTrackedAppSource
from docked.services.jobs.image_update_check import ImageUpdateCheckHandler
from docked.services.jobs.tracked_apps_check import TrackedAppsCheckHandler
from docked.services.registry.base import DigestResult
from docked.services.registry.manager import RegistryManager
from docked.utils.digest_tools import DigestTool

OLD = "sha256:" + "0" * 64
NEW = "sha256:" + "f" * 64


@pytest.fixture
def mock_registry():
    """Registry manager double with the real update comparison."""
    registry = MagicMock()
    provider = MagicMock()
    provider.name = "dockerhub"
    registry.get_provider.return_value = provider
    registry.get_latest_digest = AsyncMock()
    registry.has_update = RegistryManager.has_update
    registry.github.get_latest_release = AsyncMock()
    return registry


@pytest.fixture
async def event_queue():
    bus = EventBus()
    queue = await bus.subscribe()
    return bus, queue


def make_context(job_type, registry, db_queue, event_bus=None):
    return JobContext(
        run_id=1,
        job_type=job_type,
        is_manual=True,
        logger=BatchLogger(job_type, 1),
        registry=registry,
        db_queue=db_queue,
        event_bus=event_bus,
    )


async def load_all(db_queue, model):
    async def load(db):
        result = await db.execute(select(model).order_by(model.id))
        return {row.id: row for row in result.scalars().all()}

    return await db_queue.submit(load)


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestImageUpdateCheck:
    @pytest.mark.asyncio
    async def test_detects_updates_and_records_errors(self, db_queue, add_rows, mock_registry, event_queue):
        bus, queue = event_queue
        nginx, redis, pinned, private = await add_rows(
            DeployedImage(image="nginx:1.25", container_name="web", current_digest=OLD),
            DeployedImage(image="redis:7", container_name="cache", current_digest=NEW),
            DeployedImage(image="postgres@" + OLD, container_name="db"),
            DeployedImage(image="ghcr.io/me/private:v1", container_name="app"),
        )

        async def lookup(image_repo, tag, **kwargs):
            if image_repo == "ghcr.io/me/private":
                raise RegistryAuthError("GHCR denied access", registry="ghcr", image=image_repo, status_code=401)
            return DigestResult(digest=NEW, tag=tag, provider_name="dockerhub")

        mock_registry.get_latest_digest.side_effect = lookup
        handler = ImageUpdateCheckHandler(DatabaseImageSource(db_queue))

        result = await handler.execute(make_context("docker-hub-pull", mock_registry, db_queue, bus))

        assert result.checked_count == 3
        assert result.updated_count == 1
        assert result.error_message is None
        assert result.partial is False

        rows = await load_all(db_queue, DeployedImage)
        assert rows[nginx.id].has_update is True
        assert rows[nginx.id].latest_digest == NEW
        assert rows[nginx.id].provider == "dockerhub"
        assert rows[nginx.id].last_checked_at is not None
        assert rows[redis.id].has_update is False
        assert rows[pinned.id].last_checked_at is None
        assert "denied" in rows[private.id].last_error

        events = drain(queue)
        assert [e["type"] for e in events] == [EVENT_IMAGE_UPDATE]
        assert events[0]["image_id"] == nginx.id
        assert events[0]["run_id"] == 1

    @pytest.mark.asyncio
    async def test_no_event_for_already_known_update(self, db_queue, add_rows, mock_registry, event_queue):
        bus, queue = event_queue
        await add_rows(DeployedImage(image="nginx:1.25", current_digest=OLD, has_update=True))
        mock_registry.get_latest_digest.return_value = DigestResult(digest=NEW, tag="1.25", provider_name="dockerhub")

        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue)).execute(
            make_context("docker-hub-pull", mock_registry, db_queue, bus)
        )

        assert result.updated_count == 1
        assert drain(queue) == []

    @pytest.mark.asyncio
    async def test_fallback_result_stored(self, db_queue, add_rows, mock_registry):
        (app,) = await add_rows(DeployedImage(image="ghcr.io/owner/app:v1.0.0", github_repo="owner/app"))
        mock_registry.get_latest_digest.return_value = DigestResult(
            digest=None,
            tag="v1.1.0",
            provider_name="github-releases",
            is_fallback=True,
            method="github-release",
            version="v1.1.0",
        )

        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue)).execute(
            make_context("docker-hub-pull", mock_registry, db_queue)
        )

        assert result.updated_count == 1
        mock_registry.get_latest_digest.assert_awaited_once_with(
            "ghcr.io/owner/app", "v1.0.0", user_id=None, github_repo="owner/app"
        )
        row = (await load_all(db_queue, DeployedImage))[app.id]
        assert row.is_fallback is True
        assert row.latest_version == "v1.1.0"
        assert row.provider == "github-releases"

    @pytest.mark.asyncio
    async def test_unknown_status_is_not_no_update(self, db_queue, add_rows, mock_registry):
        (app,) = await add_rows(DeployedImage(image="ghcr.io/owner/app:v1"))
        mock_registry.get_latest_digest.return_value = None

        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue)).execute(
            make_context("docker-hub-pull", mock_registry, db_queue)
        )

        assert result.checked_count == 1
        assert result.updated_count == 0
        row = (await load_all(db_queue, DeployedImage))[app.id]
        assert row.last_error.startswith("Update status unknown")

    @pytest.mark.asyncio
    async def test_rate_limit_stops_run_with_partial_counts(self, db_queue, add_rows, mock_registry):
        await add_rows(*(DeployedImage(image=f"team/app{i}:latest") for i in range(4)))
        mock_registry.get_latest_digest.side_effect = RateLimitExceededError(
            "Rate limit exceeded after 5 consecutive 429 responses", registry="dockerhub"
        )

        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue), concurrency=1).execute(
            make_context("docker-hub-pull", mock_registry, db_queue)
        )

        assert mock_registry.get_latest_digest.await_count == 1
        assert result.checked_count == 1
        assert result.partial is True
        assert result.error_message.startswith("Registry rate limit exceeded. Processed 1 of 4 images")

    @pytest.mark.asyncio
    async def test_unexpected_lookup_error_is_per_image(self, db_queue, add_rows, mock_registry):
        broken, fine = await add_rows(
            DeployedImage(image="ghcr.io/owner/app:v1"),
            DeployedImage(image="nginx:1.25", current_digest=OLD),
        )

        async def lookup(image_repo, tag, **kwargs):
            if image_repo == "ghcr.io/owner/app":
                raise KeyError("tag_name")
            return DigestResult(digest=NEW, tag=tag, provider_name="dockerhub")

        mock_registry.get_latest_digest.side_effect = lookup

        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue)).execute(
            make_context("docker-hub-pull", mock_registry, db_queue)
        )

        assert result.checked_count == 2
        assert result.updated_count == 1
        assert result.partial is False
        rows = await load_all(db_queue, DeployedImage)
        assert rows[broken.id].last_error.startswith("Unexpected error: KeyError")
        assert rows[fine.id].has_update is True

    @pytest.mark.asyncio
    async def test_malformed_release_fallback_does_not_abort_run(
        self, db_queue, add_rows, http_client_factory, no_retry_sleep
    ):
        ghcr_image, nginx = await add_rows(
            DeployedImage(image="ghcr.io/owner/app:v1"),
            DeployedImage(image="nginx:1.25", current_digest=OLD),
        )

        def handler(request):
            if request.url.host == "api.github.com":
                return httpx.Response(200, text="<html>proxy error</html>")
            if request.url.host == "ghcr.io":
                return httpx.Response(429)
            if request.url.host == "auth.docker.io":
                return httpx.Response(200, json={"token": "t"})
            return httpx.Response(200, headers={"Docker-Content-Digest": NEW})

        registry = RegistryManager(
            http_client=http_client_factory(handler), digest_tool=DigestTool(tools=())
        )

        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue)).execute(
            make_context("docker-hub-pull", registry, db_queue)
        )

        assert result.checked_count == 2
        assert result.updated_count == 1
        rows = await load_all(db_queue, DeployedImage)
        assert rows[ghcr_image.id].last_error.startswith("Update status unknown")
        assert rows[ghcr_image.id].has_update is False
        assert rows[nginx.id].latest_digest == NEW
        assert rows[nginx.id].has_update is True

    @pytest.mark.asyncio
    async def test_empty_source(self, db_queue, mock_registry):
        result = await ImageUpdateCheckHandler(DatabaseImageSource(db_queue)).execute(
            make_context("docker-hub-pull", mock_registry, db_queue)
        )
        assert result.checked_count == 0
        mock_registry.get_latest_digest.assert_not_awaited()


class TestTrackedAppsCheck:
    @pytest.mark.asyncio
    async def test_release_and_image_apps(self, db_queue, add_rows, mock_registry, event_queue):
        bus, queue = event_queue
        release_app, image_app, current_app, empty_app = await add_rows(
            TrackedApp(name="Gitea", github_repo="go-gitea/gitea", current_version="1.21.0"),
            TrackedApp(name="Tool", image="ghcr.io/o/tool:1.0", current_digest=OLD),
            TrackedApp(name="Current", github_repo="o/current", current_version="v2.0.0"),
            TrackedApp(name="Nothing"),
        )

        async def latest_release(repo):
            if repo == "go-gitea/gitea":
                return GitHubRelease(tag_name="v1.22.0")
            return GitHubRelease(tag_name="v2.0.0")

        mock_registry.github.get_latest_release.side_effect = latest_release
        mock_registry.get_latest_digest.return_value = DigestResult(digest=NEW, tag="1.0", provider_name="ghcr")

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue, bus)
        )

        assert result.checked_count == 3
        assert result.updated_count == 2

        rows = await load_all(db_queue, TrackedApp)
        assert rows[release_app.id].has_update is True
        assert rows[release_app.id].latest_version == "v1.22.0"
        assert rows[image_app.id].has_update is True
        assert rows[image_app.id].latest_digest == NEW
        assert rows[current_app.id].has_update is False
        assert rows[empty_app.id].last_checked_at is None

        events = drain(queue)
        assert [e["type"] for e in events] == [EVENT_TRACKED_APP_UPDATE, EVENT_TRACKED_APP_UPDATE]
        assert {e["name"] for e in events} == {"Gitea", "Tool"}

    @pytest.mark.asyncio
    async def test_no_releases_recorded(self, db_queue, add_rows, mock_registry):
        (app,) = await add_rows(TrackedApp(name="New", github_repo="o/new", current_version="0.1"))
        mock_registry.github.get_latest_release.return_value = None

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue)
        )

        assert result.checked_count == 1
        row = (await load_all(db_queue, TrackedApp))[app.id]
        assert row.last_error == "No releases found"
        assert row.has_update is False

    @pytest.mark.asyncio
    async def test_invalid_repository_is_per_app_error(self, db_queue, add_rows, mock_registry):
        bad, good = await add_rows(
            TrackedApp(name="Bad", github_repo="not a repo", current_version="1.0"),
            TrackedApp(name="Good", github_repo="o/good", current_version="1.0"),
        )

        async def latest_release(repo):
            if repo == "not a repo":
                raise ValueError("Invalid GitHub repository format")
            return GitHubRelease(tag_name="1.1")

        mock_registry.github.get_latest_release.side_effect = latest_release

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue)
        )

        assert result.checked_count == 2
        assert result.updated_count == 1
        rows = await load_all(db_queue, TrackedApp)
        assert "Invalid GitHub repository" in rows[bad.id].last_error
        assert rows[good.id].has_update is True

    @pytest.mark.asyncio
    async def test_rate_limit_stops_loop(self, db_queue, add_rows, mock_registry):
        await add_rows(
            TrackedApp(name="A", github_repo="o/a", current_version="1.0"),
            TrackedApp(name="B", github_repo="o/b", current_version="1.0"),
            TrackedApp(name="C", github_repo="o/c", current_version="1.0"),
        )

        async def latest_release(repo):
            if repo == "o/b":
                raise RegistryRateLimitError("GitHub API rate limit exceeded", registry="github-releases")
            return GitHubRelease(tag_name="1.0")

        mock_registry.github.get_latest_release.side_effect = latest_release

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue)
        )

        assert mock_registry.github.get_latest_release.await_count == 2
        assert result.checked_count == 1
        assert result.partial is True
        assert "Processed 1 of 3 tracked apps" in result.error_message

    @pytest.mark.asyncio
    async def test_image_app_without_digest_is_not_an_update(
        self, db_queue, add_rows, mock_registry, event_queue
    ):
        bus, queue = event_queue
        (app,) = await add_rows(TrackedApp(name="Web", image="nginx", current_version="1.25"))
        mock_registry.get_latest_digest.return_value = DigestResult(
            digest=NEW, tag="latest", provider_name="dockerhub"
        )

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue, bus)
        )

        assert result.checked_count == 1
        assert result.updated_count == 0
        row = (await load_all(db_queue, TrackedApp))[app.id]
        assert row.has_update is False
        assert row.latest_digest == NEW
        assert row.last_error is None
        assert drain(queue) == []

    @pytest.mark.asyncio
    async def test_image_app_fallback_compares_versions(self, db_queue, add_rows, mock_registry):
        (app,) = await add_rows(
            TrackedApp(name="App", image="ghcr.io/owner/app:v1.0.0", current_version="v1.0.0")
        )
        mock_registry.get_latest_digest.return_value = DigestResult(
            digest=None,
            tag="v1.1.0",
            provider_name="github-releases",
            is_fallback=True,
            method="github-release",
            version="v1.1.0",
        )

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue)
        )

        assert result.updated_count == 1
        row = (await load_all(db_queue, TrackedApp))[app.id]
        assert row.has_update is True
        assert row.latest_version == "v1.1.0"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_per_app(self, db_queue, add_rows, mock_registry):
        broken, fine = await add_rows(
            TrackedApp(name="Broken", github_repo="o/broken", current_version="1.0"),
            TrackedApp(name="Fine", github_repo="o/fine", current_version="1.0"),
        )

        async def latest_release(repo):
            if repo == "o/broken":
                raise AttributeError("'str' object has no attribute 'get'")
            return GitHubRelease(tag_name="1.1")

        mock_registry.github.get_latest_release.side_effect = latest_release

        result = await TrackedAppsCheckHandler(DatabaseTrackedAppSource(db_queue)).execute(
            make_context("tracked-apps-check", mock_registry, db_queue)
        )

        assert result.checked_count == 2
        assert result.updated_count == 1
        assert result.partial is False
        rows = await load_all(db_queue, TrackedApp)
        assert rows[broken.id].last_error.startswith("Unexpected error: AttributeError")
        assert rows[fine.id].has_update is True
