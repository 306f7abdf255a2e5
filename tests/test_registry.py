import asyncio
from datetime import datetime, timezone

import pytest

from app.core.errors import InvalidTransitionError, JobNotFoundError
from app.jobs.lifecycle import define_job
from app.jobs.registry import JobRegistry
from app.jobs.types import JobContext, JobResult
from conftest import RecordingHooks


def _context(name="demo", attempt=1, max_attempts=1):
    return JobContext(
        job_id="job-1",
        job_name=name,
        job_key=name,
        execution_id="ex-1",
        config={},
        started_at=datetime(2026, 3, 10, tzinfo=timezone.utc),
        attempt=attempt,
        max_attempts=max_attempts,
    )


def _definition(hooks, execute, name="demo", seed=True):
    return define_job(
        name=name,
        display_name=name.title(),
        description="test job",
        default_schedule="0 22 * * *",
        execute=execute,
        hooks=hooks,
        default_config={"k": 1},
        seed_on_startup=seed,
    )


async def _ok(context):
    return JobResult(success=True, users_affected=2, summary="done")


async def _boom(context):
    raise RuntimeError("boom")


def test_register_and_lookup():
    registry = JobRegistry()
    hooks = RecordingHooks()
    registry.register(_definition(hooks, _ok))
    registry.register(_definition(hooks, _ok, name="manual", seed=False))

    assert registry.has("demo")
    assert registry.get("missing") is None
    assert [j.name for j in registry.get_all()] == ["demo", "manual"]

    defaults = registry.get_defaults()
    assert [d.name for d in defaults] == ["demo"]
    assert defaults[0].timezone == "Asia/Tehran"
    assert defaults[0].config == {"k": 1}


def test_reregister_overwrites():
    registry = JobRegistry()
    hooks = RecordingHooks()
    registry.register(_definition(hooks, _boom))
    registry.register(_definition(hooks, _ok))

    assert len(registry.get_all()) == 1
    result = asyncio.run(registry.execute("demo", _context()))
    assert result.success is True


def test_execute_unknown_job():
    with pytest.raises(JobNotFoundError):
        asyncio.run(JobRegistry().execute("ghost", _context("ghost")))


def test_lifecycle_success_hooks_in_order():
    hooks = RecordingHooks()
    registry = JobRegistry()
    registry.register(_definition(hooks, _ok))

    asyncio.run(registry.execute("demo", _context()))

    assert hooks.calls == [("running", "ex-1", 1), ("success", "ex-1", "done", 2)]


def test_reported_failure_is_recorded_not_raised():
    async def _soft_fail(context):
        return JobResult(success=False, users_affected=0, summary="nothing to send", errors=["empty message"])

    hooks = RecordingHooks()
    registry = JobRegistry()
    registry.register(_definition(hooks, _soft_fail))

    result = asyncio.run(registry.execute("demo", _context()))

    assert result.success is False
    assert hooks.calls[-1] == ("failed", "ex-1", "empty message")


def test_error_on_early_attempt_keeps_run_open():
    hooks = RecordingHooks()
    registry = JobRegistry()
    registry.register(_definition(hooks, _boom))

    with pytest.raises(RuntimeError):
        asyncio.run(registry.execute("demo", _context(attempt=1, max_attempts=3)))

    assert hooks.kinds() == ["running", "attempt_error"]


def test_error_on_final_attempt_marks_failed():
    hooks = RecordingHooks()
    registry = JobRegistry()
    registry.register(_definition(hooks, _boom))

    with pytest.raises(RuntimeError):
        asyncio.run(registry.execute("demo", _context(attempt=3, max_attempts=3)))

    assert hooks.calls[-1] == ("failed", "ex-1", "boom")


def test_mark_running_failure_aborts_before_execute():
    executed = []

    async def _track(context):
        executed.append(context.attempt)
        return JobResult(success=True, users_affected=0, summary="x")

    class EndedRunHooks(RecordingHooks):
        def mark_running(self, execution_id, *, attempt=1):
            raise InvalidTransitionError(execution_id, "failed", "running")

        def mark_failed(self, execution_id, *, error, summary=None, users_affected=0):
            raise InvalidTransitionError(execution_id, "failed", "failed")

    registry = JobRegistry()
    registry.register(_definition(EndedRunHooks(), _track))

    with pytest.raises(InvalidTransitionError):
        asyncio.run(registry.execute("demo", _context()))
    assert executed == []
