"""Tests for the batch manager (docked/services/batch_manager.py).

Tests the trigger boundary:
- Handler registration
- Awaited and background runs with terminal transition
- Already-running answers for concurrent triggers
- Failed handlers fail the run
- Run events and query passthroughs
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from docked.exceptions import UnknownJobTypeError
from docked.models.batch_run import RUN_STATUS_COMPLETED, RUN_STATUS_FAILED
from docked.services.batch_manager import BatchManager
from docked.services.event_bus import (
    EVENT_RUN_COMPLETED,
    EVENT_RUN_FAILED,
    EVENT_RUN_STARTED,
    EventBus,
)
from docked.services.jobs.base import JobContext, JobHandler, JobResult


class CountingHandler(JobHandler):
    job_type = "count"
    display_name = "Counting job"

    def __init__(self, checked=3, updated=1, gate=None):
        self.checked = checked
        self.updated = updated
        self.gate = gate
        self.contexts = []

    async def execute(self, context: JobContext) -> JobResult:
        self.contexts.append(context)
        context.logger.info("Counting things", total=self.checked)
        if self.gate is not None:
            await self.gate.wait()
        return JobResult(checked_count=self.checked, updated_count=self.updated)


class ExplodingHandler(JobHandler):
    job_type = "explode"

    async def execute(self, context: JobContext) -> JobResult:
        context.logger.info("About to fail")
        raise RuntimeError("disk on fire")


class PartialHandler(JobHandler):
    job_type = "partial"

    async def execute(self, context: JobContext) -> JobResult:
        return JobResult(checked_count=2, error_message="Rate limit exceeded. Processed 2 of 5", partial=True)


@pytest.fixture
def manager(db_queue):
    return BatchManager(MagicMock(), db_queue, EventBus(), shutdown_timeout=5)


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestRegistration:
    def test_register_and_lookup(self, manager):
        handler = CountingHandler()
        manager.register_handler(handler)

        assert manager.registered_job_types == ["count"]
        assert manager.get_handler("count") is handler

    def test_duplicate_job_type_rejected(self, manager):
        manager.register_handler(CountingHandler())
        with pytest.raises(ValueError, match="already registered"):
            manager.register_handler(CountingHandler())

    def test_handler_without_job_type_rejected(self, manager):
        handler = CountingHandler()
        handler.job_type = ""
        with pytest.raises(ValueError):
            manager.register_handler(handler)

    @pytest.mark.asyncio
    async def test_unknown_job_type(self, manager):
        with pytest.raises(UnknownJobTypeError):
            await manager.start_job("nope")
        with pytest.raises(UnknownJobTypeError):
            await manager.run_job("nope")


class TestRunJob:
    @pytest.mark.asyncio
    async def test_completed_run_persists_counts_and_log(self, manager):
        manager.register_handler(CountingHandler(checked=3, updated=1))
        queue = await manager.event_bus.subscribe()

        outcome = await manager.run_job("count", is_manual=True)

        assert outcome.already_running is False
        assert outcome.status == RUN_STATUS_COMPLETED
        run = outcome.run
        assert run.status == RUN_STATUS_COMPLETED
        assert run.is_manual is True
        assert run.checked_count == 3
        assert run.updated_count == 1
        assert run.completed_at is not None
        assert run.duration_ms is not None
        assert f"[count] [run:{run.id}] Counting things total=3" in run.log_text
        assert not manager.is_running("count")

        events = drain(queue)
        assert [e["type"] for e in events] == [EVENT_RUN_STARTED, EVENT_RUN_COMPLETED]
        assert events[1]["checked_count"] == 3
        assert events[1]["log_text"] == run.log_text

    @pytest.mark.asyncio
    async def test_handler_exception_fails_run(self, manager):
        manager.register_handler(ExplodingHandler())
        queue = await manager.event_bus.subscribe()

        outcome = await manager.run_job("explode")

        assert outcome.status == RUN_STATUS_FAILED
        assert outcome.run.error_message == "disk on fire"
        assert "About to fail" in outcome.run.log_text
        assert "Job failed: disk on fire" in outcome.run.log_text
        assert drain(queue)[-1]["type"] == EVENT_RUN_FAILED

        # Lock released
        again = await manager.run_job("explode")
        assert again.already_running is False

    @pytest.mark.asyncio
    async def test_partial_result_completes_with_error_message(self, manager):
        manager.register_handler(PartialHandler())

        outcome = await manager.run_job("partial")

        assert outcome.status == RUN_STATUS_COMPLETED
        assert outcome.run.checked_count == 2
        assert outcome.run.error_message.startswith("Rate limit exceeded")

    @pytest.mark.asyncio
    async def test_context_carries_collaborators(self, manager):
        handler = CountingHandler()
        manager.register_handler(handler)

        outcome = await manager.run_job("count")

        context = handler.contexts[0]
        assert context.run_id == outcome.run_id
        assert context.registry is manager.registry
        assert context.db_queue is manager.db_queue
        assert context.is_manual is False


class TestStartJob:
    @pytest.mark.asyncio
    async def test_second_trigger_reports_running_run(self, manager):
        gate = asyncio.Event()
        manager.register_handler(CountingHandler(gate=gate))

        first = await manager.start_job("count", is_manual=True)
        second = await manager.start_job("count", is_manual=True)

        assert first.already_running is False
        assert second.already_running is True
        assert second.run_id == first.run_id
        assert "already running" in second.message
        assert manager.is_running("count")

        gate.set()
        await manager.stop()

        run = await manager.get_run(first.run_id)
        assert run.status == RUN_STATUS_COMPLETED
        assert not manager.is_running("count")

        third = await manager.start_job("count")
        assert third.already_running is False
        await manager.stop()

    @pytest.mark.asyncio
    async def test_different_job_types_run_concurrently(self, manager):
        gate = asyncio.Event()
        manager.register_handler(CountingHandler(gate=gate))
        manager.register_handler(PartialHandler())

        counting = await manager.start_job("count")
        partial = await manager.run_job("partial")

        assert counting.already_running is False
        assert partial.already_running is False

        gate.set()
        await manager.stop()

    @pytest.mark.asyncio
    async def test_status(self, manager):
        gate = asyncio.Event()
        manager.register_handler(CountingHandler(gate=gate))
        started = await manager.start_job("count")

        status = manager.get_status()
        assert status["running_jobs"] == {"count": started.run_id}
        assert status["registered_jobs"] == [{"job_type": "count", "display_name": "Counting job"}]
        assert status["scheduler"] == {"running": False}

        gate.set()
        await manager.stop()


class TestQueriesAndConfig:
    @pytest.mark.asyncio
    async def test_history_passthroughs(self, manager):
        manager.register_handler(CountingHandler())
        manager.register_handler(PartialHandler())
        await manager.run_job("count")
        await manager.run_job("partial")

        assert (await manager.get_latest_run()).job_type == "partial"
        assert (await manager.get_latest_run("count")).job_type == "count"
        assert len(await manager.get_recent_runs(limit=10)) == 2
        assert set(await manager.get_latest_runs_by_job_type()) == {"count", "partial"}

    @pytest.mark.asyncio
    async def test_update_batch_config(self, manager):
        manager.register_handler(CountingHandler())

        config = await manager.update_batch_config("count", enabled=False, interval_minutes=30)
        assert config.enabled is False
        assert config.interval_minutes == 30
        assert [c.job_type for c in await manager.get_batch_config()] == ["count"]

    @pytest.mark.asyncio
    async def test_update_batch_config_validation(self, manager):
        manager.register_handler(CountingHandler())
        with pytest.raises(ValidationError):
            await manager.update_batch_config("count", interval_minutes=0)
        with pytest.raises(UnknownJobTypeError):
            await manager.update_batch_config("nope", enabled=True)

    @pytest.mark.asyncio
    async def test_cleanup_stale_runs(self, manager, add_rows, make_run):
        await add_rows(make_run(job_type="count", started_at=datetime.now(UTC) - timedelta(hours=2)))
        assert await manager.cleanup_stale_runs() == 1

    @pytest.mark.asyncio
    async def test_prune_runs(self, manager, add_rows, make_run):
        old = datetime.now(UTC) - timedelta(days=40)
        await add_rows(
            make_run(job_type="count", status=RUN_STATUS_COMPLETED, started_at=old, completed_at=old),
            make_run(job_type="count", status=RUN_STATUS_COMPLETED),
        )

        assert await manager.prune_runs(timedelta(days=30)) == 1
        assert len(await manager.get_recent_runs()) == 1
