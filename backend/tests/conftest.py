"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable
from datetime import UTC, datetime
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set DATABASE_URL for tests BEFORE importing docked.db
# This prevents the module from trying to create /data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("DOCKED_METRICS_PORT", None)

from docked.db import create_engine, init_db  # noqa: E402
from docked.models.batch_run import RUN_STATUS_RUNNING, BatchRun  # noqa: E402
from docked.services.db_queue import DatabaseOperationQueue  # noqa: E402

CREDENTIAL_ENV_VARS = (
    "DOCKERHUB_TOKEN",
    "DOCKERHUB_USERNAME",
    "GHCR_TOKEN",
    "GHCR_USERNAME",
    "GITHUB_TOKEN",
    "GITLAB_TOKEN",
)

# Modules that import rate_limit_delay by name
RATE_LIMIT_DELAY_TARGETS = (
    "docked.services.registry.dockerhub.rate_limit_delay",
    "docked.services.registry.ghcr.rate_limit_delay",
    "docked.services.registry.gitlab.rate_limit_delay",
    "docked.services.registry.gcr.rate_limit_delay",
    "docked.services.registry.github_releases.rate_limit_delay",
)


@pytest.fixture(autouse=True)
def clean_credentials(monkeypatch):
    """Run every test anonymously unless it sets credentials itself."""
    for name in CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def no_rate_limit_delay():
    """Skip the per-call registry pause so provider tests run instantly."""
    patchers = [patch(target, new_callable=AsyncMock) for target in RATE_LIMIT_DELAY_TARGETS]
    mocks = [p.start() for p in patchers]
    yield mocks
    for p in patchers:
        p.stop()


@pytest.fixture
def no_retry_sleep():
    """Make retry backoff waits return immediately."""
    with patch("docked.utils.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    # Use in-memory SQLite for testing
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)

    yield engine

    # Cleanup
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def db_queue(session_factory) -> DatabaseOperationQueue:
    """Database operation queue over the test engine.

    The in-memory engine shares one connection, so tests go through the
    queue rather than holding a session of their own.
    """
    return DatabaseOperationQueue(session_factory)


@pytest.fixture
def add_rows(db_queue) -> Callable:
    """Persist ORM objects through the queue and return them with ids."""

    async def _add_rows(*rows):
        async def write(db: AsyncSession):
            db.add_all(rows)
            await db.commit()
            return list(rows)

        return await db_queue.submit(write)

    return _add_rows


@pytest.fixture
def make_run():
    """Factory fixture to create BatchRun instances with valid required fields."""

    def _make_run(**kwargs):
        defaults = {
            "job_type": "docker-hub-pull",
            "status": RUN_STATUS_RUNNING,
            "is_manual": False,
            "started_at": datetime.now(UTC),
            "checked_count": 0,
            "updated_count": 0,
            "log_text": "",
        }
        defaults.update(kwargs)
        return BatchRun(**defaults)

    return _make_run


@pytest.fixture
async def http_client_factory() -> AsyncGenerator[Callable[..., httpx.AsyncClient], None]:
    """Build AsyncClients backed by an httpx.MockTransport handler.

    Usage:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token": "abc"})

        client = http_client_factory(handler)
    """
    clients: list[httpx.AsyncClient] = []

    def _factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _factory

    for client in clients:
        await client.aclose()
