from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import ExecutionNotFoundError, InvalidTransitionError, JobExistsError, JobNotFoundError
from app.jobs.types import DEFAULT_TIMEZONE, JobConfig, JobDefaults
from app.models.job_execution import JobExecution
from app.models.job_target import ScheduledJobTargetPack, ScheduledJobTargetUser
from app.models.scheduled_job import ScheduledJob
from app.services.cron import calculate_next_run, from_millis, to_millis, utcnow, validate_schedule

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"success", "failed"})

# running -> running is a queue retry of the same run, not a regression.
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed"}),
    "running": frozenset({"running", "success", "failed"}),
    "success": frozenset(),
    "failed": frozenset(),
}


@dataclass(frozen=True)
class JobStats:
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_duration_ms: float
    last_execution: JobExecution | None


@dataclass(frozen=True)
class TargetLists:
    include_user_ids: list[str]
    exclude_user_ids: list[str]
    pack_ids: list[str]


def parse_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        v = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return v if isinstance(v, dict) else {}


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class ExecutionTracker:
    """
    Persistence for scheduled job records, job targets and execution records.

    Every status change of a run goes through here; terminal executions
    (success/failed) reject any further transition.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    # ------------------------------------------------------------------
    # Scheduled job records
    # ------------------------------------------------------------------

    def seed_defaults(self, defaults: list[JobDefaults]) -> list[str]:
        """
        Create missing records from registry defaults.

        Existing records only get their display fields refreshed so operator
        edits to schedule/timezone/enabled/config survive restarts.
        """
        now = self._clock()
        now_ms = to_millis(now)
        created: list[str] = []

        with self._session_factory() as s:
            for d in defaults:
                existing = s.execute(select(ScheduledJob).where(ScheduledJob.name == d.name)).scalar_one_or_none()
                if existing is None:
                    validate_schedule(d.schedule, d.timezone)
                    s.add(
                        ScheduledJob(
                            name=d.name,
                            job_key=d.name,
                            job_type="coded",
                            display_name=d.display_name,
                            description=d.description,
                            schedule=d.schedule,
                            timezone=d.timezone,
                            enabled=True,
                            config_json=_dumps(d.config),
                            next_run_at=calculate_next_run(d.schedule, d.timezone, now),
                            created_at=now_ms,
                            updated_at=now_ms,
                        )
                    )
                    created.append(d.name)
                    logger.info("Created job", extra={"job_name": d.name})
                else:
                    existing.display_name = d.display_name
                    existing.description = d.description
                    existing.job_key = existing.job_key or d.name
                    existing.job_type = existing.job_type or "coded"
                    existing.updated_at = now_ms
                    logger.info("Updated job", extra={"job_name": d.name})
            s.commit()
        return created

    def create_job(
        self,
        *,
        name: str,
        job_key: str,
        display_name: str,
        schedule: str,
        timezone: str = DEFAULT_TIMEZONE,
        description: str | None = None,
        config: JobConfig | None = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        validate_schedule(schedule, timezone)
        now = self._clock()
        now_ms = to_millis(now)

        with self._session_factory() as s:
            job = ScheduledJob(
                name=name,
                job_key=job_key,
                job_type="coded",
                display_name=display_name,
                description=description,
                schedule=schedule,
                timezone=timezone,
                enabled=bool(enabled),
                config_json=_dumps(config or {}),
                next_run_at=calculate_next_run(schedule, timezone, now) if enabled else None,
                created_at=now_ms,
                updated_at=now_ms,
            )
            if s.execute(select(ScheduledJob.id).where(ScheduledJob.name == name)).first() is not None:
                raise JobExistsError(f"Job already exists: {name}")
            s.add(job)
            try:
                s.commit()
            except IntegrityError as exc:
                # lost a race with a concurrent create of the same name
                s.rollback()
                raise JobExistsError(f"Job already exists: {name}") from exc
            return job

    def get_job(self, name: str) -> ScheduledJob | None:
        with self._session_factory() as s:
            return s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()

    def require_job(self, name: str) -> ScheduledJob:
        job = self.get_job(name)
        if job is None:
            raise JobNotFoundError(f"Job not found: {name}")
        return job

    def list_jobs(self, *, enabled_only: bool = False) -> list[ScheduledJob]:
        with self._session_factory() as s:
            q = select(ScheduledJob).order_by(ScheduledJob.name.asc())
            if enabled_only:
                q = q.where(ScheduledJob.enabled.is_(True))
            return list(s.execute(q).scalars().all())

    def update_job(
        self,
        name: str,
        *,
        schedule: str | None = None,
        timezone: str | None = None,
        enabled: bool | None = None,
        config: JobConfig | None = None,
    ) -> ScheduledJob:
        """Apply operator edits; schedule/timezone are validated before anything is written."""
        now = self._clock()

        with self._session_factory() as s:
            job = s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()
            if job is None:
                raise JobNotFoundError(f"Job not found: {name}")

            new_schedule = schedule if schedule is not None else job.schedule
            new_timezone = timezone if timezone is not None else job.timezone
            validate_schedule(new_schedule, new_timezone)

            job.schedule = new_schedule
            job.timezone = new_timezone
            if enabled is not None:
                job.enabled = bool(enabled)
            if config is not None:
                job.config_json = _dumps(config)
            job.next_run_at = calculate_next_run(new_schedule, new_timezone, now) if job.enabled else None
            job.updated_at = to_millis(now)
            s.commit()
            return job

    def delete_job(self, name: str) -> bool:
        with self._session_factory() as s:
            job = s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()
            if job is None:
                return False
            s.execute(delete(ScheduledJobTargetUser).where(ScheduledJobTargetUser.job_id == job.id))
            s.execute(delete(ScheduledJobTargetPack).where(ScheduledJobTargetPack.job_id == job.id))
            s.execute(delete(JobExecution).where(JobExecution.job_id == job.id))
            s.delete(job)
            s.commit()
            return True

    def refresh_next_run(self, name: str) -> int | None:
        """Recompute next_run_at from the current clock (NULL for disabled records)."""
        now = self._clock()
        with self._session_factory() as s:
            job = s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()
            if job is None:
                raise JobNotFoundError(f"Job not found: {name}")
            job.next_run_at = calculate_next_run(job.schedule, job.timezone, now) if job.enabled else None
            job.updated_at = to_millis(now)
            s.commit()
            return job.next_run_at

    def claim_due_jobs(self, *, now: datetime, limit: int) -> list[ScheduledJob]:
        """
        Return enabled records with next_run_at <= now, ordered by next_run_at.

        next_run_at is advanced to the following occurrence (and last_run_at
        stamped) in the same transaction, before anything is dispatched, so a
        run still executing when the next tick fires is not picked up again.
        This is not a distributed lock: run a single scheduler per table.
        """
        now_ms = to_millis(now)
        with self._session_factory() as s:
            q = (
                select(ScheduledJob)
                .where(ScheduledJob.enabled.is_(True))
                .where(ScheduledJob.next_run_at.is_not(None))
                .where(ScheduledJob.next_run_at <= now_ms)
                .order_by(ScheduledJob.next_run_at.asc())
                .limit(int(limit))
            )
            jobs = list(s.execute(q).scalars().all())
            for j in jobs:
                j.last_run_at = now_ms
                j.next_run_at = calculate_next_run(j.schedule, j.timezone, now)
                j.updated_at = now_ms
            s.commit()
            return jobs

    def mark_dispatched(self, job_id: str, *, now: datetime) -> None:
        """Stamp a manual dispatch and move next_run_at past ``now``."""
        now_ms = to_millis(now)
        with self._session_factory() as s:
            job = s.get(ScheduledJob, job_id)
            if job is None:
                return
            job.last_run_at = now_ms
            job.next_run_at = calculate_next_run(job.schedule, job.timezone, now) if job.enabled else None
            job.updated_at = now_ms
            s.commit()

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    def get_targets(self, job_id: str) -> TargetLists:
        with self._session_factory() as s:
            users = s.execute(
                select(ScheduledJobTargetUser)
                .where(ScheduledJobTargetUser.job_id == job_id)
                .order_by(ScheduledJobTargetUser.id.asc())
            ).scalars().all()
            packs = s.execute(
                select(ScheduledJobTargetPack.pack_id)
                .where(ScheduledJobTargetPack.job_id == job_id)
                .where(ScheduledJobTargetPack.mode == "include")
                .order_by(ScheduledJobTargetPack.id.asc())
            ).scalars().all()

        return TargetLists(
            include_user_ids=[u.telegram_user_id for u in users if u.mode == "include"],
            exclude_user_ids=[u.telegram_user_id for u in users if u.mode == "exclude"],
            pack_ids=[str(p) for p in packs],
        )

    def set_targets(
        self,
        name: str,
        *,
        include_user_ids: list[str],
        exclude_user_ids: list[str],
        pack_ids: list[str],
    ) -> TargetLists:
        """Replace all targeting rows for a job (idempotent)."""
        with self._session_factory() as s:
            job = s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()
            if job is None:
                raise JobNotFoundError(f"Job not found: {name}")

            s.execute(delete(ScheduledJobTargetUser).where(ScheduledJobTargetUser.job_id == job.id))
            s.execute(delete(ScheduledJobTargetPack).where(ScheduledJobTargetPack.job_id == job.id))

            for mode, ids in (("include", include_user_ids), ("exclude", exclude_user_ids)):
                for uid in dict.fromkeys(str(x) for x in ids):
                    s.add(ScheduledJobTargetUser(job_id=job.id, telegram_user_id=uid, mode=mode))
            for pack_id in dict.fromkeys(str(x) for x in pack_ids):
                s.add(ScheduledJobTargetPack(job_id=job.id, pack_id=pack_id, mode="include"))

            job.updated_at = self._now_ms()
            s.commit()
            job_id = job.id

        return self.get_targets(job_id)

    # ------------------------------------------------------------------
    # Execution records
    # ------------------------------------------------------------------

    def create_execution(self, job_id: str, *, metadata: dict[str, Any] | None = None) -> JobExecution:
        with self._session_factory() as s:
            execution = JobExecution(
                job_id=job_id,
                status="pending",
                started_at=self._now_ms(),
                users_affected=0,
                metadata_json=_dumps(metadata) if metadata is not None else None,
            )
            s.add(execution)
            s.commit()
            return execution

    def get_execution(self, execution_id: str) -> JobExecution | None:
        with self._session_factory() as s:
            return s.get(JobExecution, execution_id)

    def _transition(
        self,
        s: Session,
        execution_id: str,
        status: str,
    ) -> JobExecution:
        execution = s.get(JobExecution, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        if status not in _ALLOWED_TRANSITIONS.get(execution.status, frozenset()):
            raise InvalidTransitionError(execution_id, execution.status, status)

        execution.status = status
        if status in TERMINAL_STATUSES:
            completed = self._now_ms()
            execution.completed_at = completed
            execution.duration_ms = max(0, completed - int(execution.started_at))
        return execution

    def mark_running(self, execution_id: str, *, attempt: int = 1) -> JobExecution:
        with self._session_factory() as s:
            execution = self._transition(s, execution_id, "running")
            meta = parse_json_dict(execution.metadata_json)
            meta["attempts"] = int(attempt)
            execution.metadata_json = _dumps(meta)
            s.commit()
            return execution

    def mark_success(
        self,
        execution_id: str,
        *,
        summary: str,
        users_affected: int,
        details: dict[str, Any] | None = None,
        errors: list[str] | None = None,
    ) -> JobExecution:
        with self._session_factory() as s:
            execution = self._transition(s, execution_id, "success")
            result: dict[str, Any] = {"summary": summary}
            if details:
                result["details"] = details
            if errors:
                result["errors"] = list(errors)
            execution.result_json = _dumps(result)
            execution.users_affected = max(0, int(users_affected))
            execution.error = None
            s.commit()
            return execution

    def mark_failed(
        self,
        execution_id: str,
        *,
        error: str,
        summary: str | None = None,
        users_affected: int = 0,
    ) -> JobExecution:
        with self._session_factory() as s:
            execution = self._transition(s, execution_id, "failed")
            execution.error = error
            execution.users_affected = max(0, int(users_affected))
            if summary:
                execution.result_json = _dumps({"summary": summary})
            s.commit()
            return execution

    def record_attempt_error(self, execution_id: str, *, error: str, attempt: int) -> JobExecution:
        """Keep a non-final attempt's error on the run without ending it."""
        with self._session_factory() as s:
            execution = s.get(JobExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
            if execution.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(execution_id, execution.status, "running")

            meta = parse_json_dict(execution.metadata_json)
            attempt_errors = list(meta.get("attempt_errors") or [])
            attempt_errors.append({"attempt": int(attempt), "error": error})
            meta["attempt_errors"] = attempt_errors[-10:]  # cap payload size
            execution.metadata_json = _dumps(meta)
            execution.error = error
            s.commit()
            return execution

    def update_execution_status(
        self,
        execution_id: str,
        status: str,
        *,
        summary: str | None = None,
        users_affected: int | None = None,
        error: str | None = None,
    ) -> JobExecution:
        if status == "running":
            return self.mark_running(execution_id)
        if status == "success":
            return self.mark_success(execution_id, summary=summary or "", users_affected=users_affected or 0)
        if status == "failed":
            return self.mark_failed(
                execution_id, error=error or "Unknown error", summary=summary, users_affected=users_affected or 0
            )
        raise ValueError(f"Unsupported status: {status}")

    def reap_stale_executions(self, *, older_than_ms: int) -> int:
        """
        Fail pending/running executions started more than ``older_than_ms`` ago.

        Covers runs orphaned by a crash between "job finished" and "tracker
        updated". A run that later reports in is rejected as a regression.
        """
        now_ms = self._now_ms()
        cutoff = now_ms - int(older_than_ms)
        with self._session_factory() as s:
            stale = s.execute(
                select(JobExecution)
                .where(JobExecution.status.in_(["pending", "running"]))
                .where(JobExecution.started_at < cutoff)
            ).scalars().all()
            for execution in stale:
                execution.status = "failed"
                execution.completed_at = now_ms
                execution.duration_ms = max(0, now_ms - int(execution.started_at))
                execution.error = f"Execution abandoned: no terminal status after {int(older_than_ms) // 1000}s"
            s.commit()

        if stale:
            logger.warning("Reaped stale executions", extra={"count": len(stale)})
        return len(stale)

    def list_executions(
        self,
        *,
        job_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[JobExecution, ScheduledJob]]:
        with self._session_factory() as s:
            q = (
                select(JobExecution, ScheduledJob)
                .join(ScheduledJob, ScheduledJob.id == JobExecution.job_id)
                .order_by(JobExecution.started_at.desc())
                .offset(int(offset))
                .limit(int(limit))
            )
            if job_name:
                q = q.where(ScheduledJob.name == job_name)
            return [(e, j) for e, j in s.execute(q).all()]

    def job_stats(self, name: str) -> JobStats:
        job = self.require_job(name)
        with self._session_factory() as s:
            counts = dict(
                s.execute(
                    select(JobExecution.status, func.count(JobExecution.id))
                    .where(JobExecution.job_id == job.id)
                    .group_by(JobExecution.status)
                ).all()
            )
            avg = s.execute(
                select(func.avg(JobExecution.duration_ms))
                .where(JobExecution.job_id == job.id)
                .where(JobExecution.duration_ms.is_not(None))
            ).scalar_one()
            last = s.execute(
                select(JobExecution)
                .where(JobExecution.job_id == job.id)
                .order_by(JobExecution.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()

        return JobStats(
            total_executions=int(sum(counts.values())),
            successful_executions=int(counts.get("success", 0)),
            failed_executions=int(counts.get("failed", 0)),
            average_duration_ms=float(avg or 0.0),
            last_execution=last,
        )


def millis_to_iso(ms: int | None) -> str | None:
    return from_millis(ms).isoformat() if ms is not None else None


