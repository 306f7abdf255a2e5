"""
Cron-driven dispatcher for scheduled jobs.

Every tick claims the enabled records whose next_run_at has passed, resolves
their targets, creates a pending execution and enqueues the run. The queue
worker does the actual work, so a tick never waits on a job.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from app.core.errors import JobNotFoundError, QueueUnavailableError
from app.jobs.registry import JobRegistry
from app.jobs.types import DEFAULT_TIMEZONE, JobConfig, JobTargets
from app.models.job_execution import JobExecution
from app.models.scheduled_job import ScheduledJob
from app.services.cron import utcnow
from app.services.execution_tracker import ExecutionTracker, JobStats, TargetLists, parse_json_dict
from app.services.targeting import MembershipLookup, resolve_targets
from app.worker.queue import QueueConfig, QueuedJob, QueueManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickSummary:
    due: int
    dispatched: int
    failed: int
    reaped: int = 0


@dataclass(frozen=True)
class JobOverview:
    record: ScheduledJob
    registered: bool

    @property
    def active(self) -> bool:
        return bool(self.record.enabled) and self.registered


class Scheduler:
    def __init__(
        self,
        tracker: ExecutionTracker,
        registry: JobRegistry,
        queue: QueueManager,
        membership: MembershipLookup,
        *,
        clock: Callable[[], datetime] = utcnow,
        tick_seconds: float = 15,
        max_jobs_per_tick: int = 20,
        stale_execution_seconds: int = 3600,
    ) -> None:
        self._tracker = tracker
        self._registry = registry
        self._queue = queue
        self._membership = membership
        self._clock = clock
        self._tick_seconds = float(tick_seconds)
        self._max_jobs_per_tick = int(max_jobs_per_tick)
        self._stale_execution_seconds = int(stale_execution_seconds)

        self._initialized = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_tick: TickSummary | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, queue_config: QueueConfig) -> None:
        """
        Bring up the queue, then seed records for registered definitions.

        QueueUnavailableError propagates; the caller decides whether that is
        fatal for the process.
        """
        self._queue.initialize(queue_config)

        created = self._tracker.seed_defaults(self._registry.get_defaults())
        for record in self._tracker.list_jobs(enabled_only=True):
            if self._registry.has(record.job_key):
                self._tracker.refresh_next_run(record.name)
            else:
                logger.warning("No handler registered for job", extra={"job_name": record.name, "job_key": record.job_key})

        self._initialized = True
        logger.info(
            "Scheduler initialized",
            extra={"registered": len(self._registry.get_all()), "seeded": len(created)},
        )

    def start(self) -> None:
        if not self._initialized:
            raise RuntimeError("Scheduler.initialize() must run before start()")
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._run_forever, name="job-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started", extra={"tick_seconds": self._tick_seconds})

    def _run_forever(self) -> None:
        while not self._stop.is_set():
            tick_started = self._clock()
            try:
                self.tick(tick_started)
            except Exception:
                logger.exception("Scheduler tick failed")

            # Sleep for tick interval (minus time spent), but wake quickly on stop.
            elapsed = (self._clock() - tick_started).total_seconds()
            self._stop.wait(timeout=max(0.2, self._tick_seconds - elapsed))

    def shutdown(self) -> None:
        logger.info("Shutting down scheduler")
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, self._tick_seconds))
            self._thread = None
        self._queue.shutdown()
        self._initialized = False
        logger.info("Scheduler shut down")

    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> TickSummary:
        now = now or self._clock()

        reaped = 0
        if self._stale_execution_seconds > 0:
            reaped = self._tracker.reap_stale_executions(older_than_ms=self._stale_execution_seconds * 1000)

        # next_run_at is already advanced for every claimed record
        due = self._tracker.claim_due_jobs(now=now, limit=self._max_jobs_per_tick)
        dispatched = 0
        failed = 0
        for record in due:
            if not self._registry.has(record.job_key):
                logger.warning("Skipping job without handler", extra={"job_name": record.name, "job_key": record.job_key})
                failed += 1
                continue
            try:
                self._dispatch(record, trigger="schedule")
                dispatched += 1
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.error("Failed to dispatch job", extra={"job_name": record.name, "error": str(exc)})

        summary = TickSummary(due=len(due), dispatched=dispatched, failed=failed, reaped=reaped)
        self.last_tick = summary
        if due or reaped:
            logger.info(
                "Tick complete",
                extra={"due": summary.due, "dispatched": dispatched, "failed": failed, "reaped": reaped},
            )
        return summary

    def _resolve_targets(self, record: ScheduledJob) -> JobTargets:
        lists = self._tracker.get_targets(record.id)
        return resolve_targets(lists.include_user_ids, lists.exclude_user_ids, lists.pack_ids, self._membership)

    def _dispatch(self, record: ScheduledJob, *, trigger: str) -> JobExecution:
        targets = self._resolve_targets(record)
        execution = self._tracker.create_execution(
            record.id,
            metadata={"trigger": trigger, "target_count": len(targets.final_user_ids)},
        )
        queued = QueuedJob(
            job_name=record.name,
            job_key=record.job_key,
            job_id=record.id,
            execution_id=execution.id,
            config=parse_json_dict(record.config_json),
            started_at=int(execution.started_at),
            targets=targets,
        )
        try:
            self._queue.add_job(queued)
        except QueueUnavailableError as exc:
            self._tracker.mark_failed(execution.id, error=str(exc))
            raise

        logger.info(
            "Dispatched job",
            extra={"job_name": record.name, "execution_id": execution.id, "trigger": trigger},
        )
        return execution

    def trigger_job(self, name: str) -> JobExecution:
        """Run a job now, outside its schedule, through the same dispatch path."""
        record = self._tracker.require_job(name)
        if not self._registry.has(record.job_key):
            raise JobNotFoundError(f"No handler registered for job: {name}")

        execution = self._dispatch(record, trigger="manual")
        self._tracker.mark_dispatched(record.id, now=self._clock())
        return self._tracker.get_execution(execution.id) or execution

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_job(
        self,
        *,
        name: str,
        job_key: str,
        display_name: str,
        schedule: str | None = None,
        timezone: str | None = None,
        description: str | None = None,
        config: JobConfig | None = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Add an operator-defined record backed by a registered handler (e.g. custom-message)."""
        definition = self._registry.get(job_key)
        if definition is None:
            raise JobNotFoundError(f"No handler registered for job key: {job_key}")

        return self._tracker.create_job(
            name=name,
            job_key=job_key,
            display_name=display_name,
            schedule=schedule or definition.default_schedule,
            timezone=timezone or definition.default_timezone or DEFAULT_TIMEZONE,
            description=description or definition.description,
            config={**definition.default_config, **(config or {})},
            enabled=enabled,
        )

    def delete_job(self, name: str) -> None:
        if not self._tracker.delete_job(name):
            raise JobNotFoundError(f"Job not found: {name}")

    def update_job_config(
        self,
        name: str,
        *,
        schedule: str | None = None,
        timezone: str | None = None,
        enabled: bool | None = None,
        config: JobConfig | None = None,
    ) -> ScheduledJob:
        record = self._tracker.update_job(name, schedule=schedule, timezone=timezone, enabled=enabled, config=config)
        logger.info(
            "Updated job config",
            extra={"job_name": name, "schedule": record.schedule, "enabled": record.enabled},
        )
        return record

    def get_job_targets(self, name: str) -> TargetLists:
        return self._tracker.get_targets(self._tracker.require_job(name).id)

    def set_job_targets(
        self,
        name: str,
        *,
        include_user_ids: list[str] | None = None,
        exclude_user_ids: list[str] | None = None,
        pack_ids: list[str] | None = None,
    ) -> TargetLists:
        return self._tracker.set_targets(
            name,
            include_user_ids=list(include_user_ids or []),
            exclude_user_ids=list(exclude_user_ids or []),
            pack_ids=list(pack_ids or []),
        )

    def preview_targets(self, name: str) -> JobTargets:
        return self._resolve_targets(self._tracker.require_job(name))

    def get_job(self, name: str) -> JobOverview:
        record = self._tracker.require_job(name)
        return JobOverview(record=record, registered=self._registry.has(record.job_key))

    def list_jobs(self) -> list[JobOverview]:
        return [
            JobOverview(record=r, registered=self._registry.has(r.job_key))
            for r in self._tracker.list_jobs()
        ]

    def list_executions(
        self,
        job_name: str | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[JobExecution, ScheduledJob]]:
        if job_name:
            self._tracker.require_job(job_name)
        return self._tracker.list_executions(job_name=job_name, limit=limit, offset=offset)

    def job_stats(self, name: str) -> JobStats:
        return self._tracker.job_stats(name)

    def update_execution_status(self, execution_id: str, status: str, **fields: Any) -> JobExecution:
        return self._tracker.update_execution_status(execution_id, status, **fields)
