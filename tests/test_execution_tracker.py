import pytest

from app.core.errors import (
    ExecutionNotFoundError,
    InvalidScheduleError,
    InvalidTransitionError,
    JobExistsError,
    JobNotFoundError,
)
from app.jobs.types import JobDefaults
from app.services.cron import to_millis
from app.services.execution_tracker import parse_json_dict


def _job(tracker, name="daily", schedule="0 22 * * *"):
    return tracker.create_job(name=name, job_key=name, display_name=name.title(), schedule=schedule)


def test_success_path_records_duration(tracker, clock):
    job = _job(tracker)
    ex = tracker.create_execution(job.id)
    assert ex.status == "pending"

    tracker.mark_running(ex.id, attempt=1)
    clock.advance(seconds=2)
    done = tracker.mark_success(ex.id, summary="sent 3", users_affected=3, details={"n": 3})

    assert done.status == "success"
    assert done.duration_ms == 2000
    assert done.completed_at == to_millis(clock.now)
    assert parse_json_dict(done.result_json) == {"summary": "sent 3", "details": {"n": 3}}
    assert parse_json_dict(done.metadata_json)["attempts"] == 1


def test_terminal_status_never_regresses(tracker):
    job = _job(tracker)
    ex = tracker.create_execution(job.id)
    tracker.mark_running(ex.id)
    tracker.mark_failed(ex.id, error="boom")

    with pytest.raises(InvalidTransitionError):
        tracker.mark_running(ex.id)
    with pytest.raises(InvalidTransitionError):
        tracker.mark_success(ex.id, summary="late", users_affected=1)
    with pytest.raises(InvalidTransitionError):
        tracker.record_attempt_error(ex.id, error="again", attempt=2)

    assert tracker.get_execution(ex.id).status == "failed"
    assert tracker.get_execution(ex.id).error == "boom"


def test_pending_cannot_jump_to_success(tracker):
    ex = tracker.create_execution(_job(tracker).id)

    with pytest.raises(InvalidTransitionError):
        tracker.mark_success(ex.id, summary="x", users_affected=0)


def test_retry_attempts_keep_run_open(tracker):
    ex = tracker.create_execution(_job(tracker).id)
    tracker.mark_running(ex.id, attempt=1)
    tracker.record_attempt_error(ex.id, error="first", attempt=1)
    tracker.mark_running(ex.id, attempt=2)

    current = tracker.get_execution(ex.id)
    meta = parse_json_dict(current.metadata_json)
    assert current.status == "running"
    assert meta["attempts"] == 2
    assert meta["attempt_errors"] == [{"attempt": 1, "error": "first"}]


def test_unknown_execution(tracker):
    with pytest.raises(ExecutionNotFoundError):
        tracker.mark_running("nope")


def test_update_execution_status_rejects_unknown_status(tracker):
    ex = tracker.create_execution(_job(tracker).id)
    with pytest.raises(ValueError):
        tracker.update_execution_status(ex.id, "pending")


def test_reaper_fails_stale_runs(tracker, clock):
    job = _job(tracker)
    stale = tracker.create_execution(job.id)
    tracker.mark_running(stale.id)
    clock.advance(hours=2)
    fresh = tracker.create_execution(job.id)

    assert tracker.reap_stale_executions(older_than_ms=3600 * 1000) == 1

    assert tracker.get_execution(stale.id).status == "failed"
    assert "abandoned" in tracker.get_execution(stale.id).error
    assert tracker.get_execution(fresh.id).status == "pending"


def test_seed_keeps_operator_edits(tracker):
    defaults = [JobDefaults("daily", "Daily", "first", "0 22 * * *", "Asia/Tehran", {"a": 1})]
    assert tracker.seed_defaults(defaults) == ["daily"]

    tracker.update_job("daily", schedule="30 21 * * *", enabled=False, config={"a": 2})
    renamed = [JobDefaults("daily", "Daily v2", "second", "0 22 * * *", "Asia/Tehran", {"a": 1})]
    assert tracker.seed_defaults(renamed) == []

    job = tracker.require_job("daily")
    assert job.display_name == "Daily v2"
    assert job.schedule == "30 21 * * *"
    assert job.enabled is False
    assert job.next_run_at is None
    assert parse_json_dict(job.config_json) == {"a": 2}


def test_update_rejects_bad_schedule_without_writing(tracker):
    _job(tracker)

    with pytest.raises(InvalidScheduleError):
        tracker.update_job("daily", schedule="every day")
    with pytest.raises(InvalidScheduleError):
        tracker.update_job("daily", timezone="Nowhere/City")
    with pytest.raises(JobNotFoundError):
        tracker.update_job("missing", enabled=False)

    assert tracker.require_job("daily").schedule == "0 22 * * *"


def test_claim_due_advances_next_run(tracker, clock):
    job = _job(tracker, schedule="0 * * * *")
    assert tracker.claim_due_jobs(now=clock.now, limit=10) == []

    clock.advance(hours=1, minutes=1)
    claimed = tracker.claim_due_jobs(now=clock.now, limit=10)

    assert [j.id for j in claimed] == [job.id]
    refreshed = tracker.require_job("daily")
    assert refreshed.last_run_at == to_millis(clock.now)
    assert refreshed.next_run_at > to_millis(clock.now)
    assert tracker.claim_due_jobs(now=clock.now, limit=10) == []


def test_targets_replace_previous_rows(tracker):
    job = _job(tracker)
    tracker.set_targets("daily", include_user_ids=["u1", "u1"], exclude_user_ids=["u2"], pack_ids=["p1"])
    t = tracker.set_targets("daily", include_user_ids=["u3"], exclude_user_ids=[], pack_ids=[])

    assert t.include_user_ids == ["u3"]
    assert t.exclude_user_ids == []
    assert t.pack_ids == []
    assert tracker.get_targets(job.id) == t


def test_stats_and_listing(tracker, clock):
    job = _job(tracker)
    for ok in (True, True, False):
        ex = tracker.create_execution(job.id)
        tracker.mark_running(ex.id)
        clock.advance(seconds=1)
        if ok:
            tracker.mark_success(ex.id, summary="ok", users_affected=1)
        else:
            tracker.mark_failed(ex.id, error="nope")

    stats = tracker.job_stats("daily")
    assert stats.total_executions == 3
    assert stats.successful_executions == 2
    assert stats.failed_executions == 1
    assert stats.average_duration_ms == 1000.0
    assert stats.last_execution.status == "failed"

    rows = tracker.list_executions(job_name="daily", limit=2)
    assert len(rows) == 2
    assert rows[0][1].name == "daily"


def test_duplicate_job_name_is_rejected(tracker):
    _job(tracker)

    with pytest.raises(JobExistsError):
        _job(tracker)

    assert [j.name for j in tracker.list_jobs()] == ["daily"]
