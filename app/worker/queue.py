"""
Durable job queue on Celery.

The scheduler enqueues one ``scheduler.run_job`` task per dispatch; a worker
(separate process, or the embedded thread when QUEUE_EMBEDDED_WORKER=1) runs
the registered handler and hands the returned notifications to the
notification handler. Delivery is at-least-once with a bounded retry policy.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from celery import Celery

from app.core.errors import QueueUnavailableError
from app.jobs.registry import JobRegistry
from app.jobs.types import JobConfig, JobContext, JobNotification, JobResult, JobTargets
from app.services.cron import from_millis
from app.worker.celery_app import RUN_JOB_QUEUE, celery_app
from app.worker.tasks import run_scheduled_job

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[list[JobNotification], JobContext], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 5000

    def countdown(self, attempt: int) -> float:
        """Seconds to wait before the attempt following ``attempt``."""
        if self.backoff_type == "fixed":
            return self.backoff_delay_ms / 1000
        return self.backoff_delay_ms * 2 ** (max(1, attempt) - 1) / 1000


@dataclass(frozen=True)
class QueueConfig:
    broker_url: str
    notification_handler: NotificationHandler | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    result_expires_seconds: int = 86400
    concurrency: int = 5
    job_timeout_seconds: int = 600
    embedded_worker: bool = False


@dataclass(frozen=True)
class QueuedJob:
    job_name: str
    job_key: str
    job_id: str
    execution_id: str
    config: JobConfig
    started_at: int
    targets: JobTargets | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "job_key": self.job_key,
            "job_id": self.job_id,
            "execution_id": self.execution_id,
            "config": dict(self.config),
            "started_at": self.started_at,
            "targets": self.targets.to_dict() if self.targets is not None else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueuedJob:
        return cls(
            job_name=str(raw["job_name"]),
            job_key=str(raw.get("job_key") or raw["job_name"]),
            job_id=str(raw["job_id"]),
            execution_id=str(raw["execution_id"]),
            config=dict(raw.get("config") or {}),
            started_at=int(raw["started_at"]),
            targets=JobTargets.from_dict(raw.get("targets")),
        )


@dataclass(frozen=True)
class QueueStats:
    waiting: int
    active: int
    scheduled: int
    reserved: int


class QueueManager:
    def __init__(self, registry: JobRegistry, app: Celery = celery_app) -> None:
        self._registry = registry
        self._app = app
        self._config: QueueConfig | None = None
        self._ready = False
        self._worker = None
        self._worker_thread: threading.Thread | None = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._config.retry_policy if self._config else RetryPolicy()

    @property
    def is_eager(self) -> bool:
        return bool(self._app.conf.task_always_eager)

    def bind(self, config: QueueConfig) -> None:
        """Attach this manager to the task without touching the broker (worker processes)."""
        self._config = config
        run_scheduled_job.manager = self
        self._app.conf.update(
            result_expires=config.result_expires_seconds,
            task_time_limit=config.job_timeout_seconds,
            worker_concurrency=config.concurrency,
        )
        if config.embedded_worker:
            # task_time_limit needs the prefork pool; the embedded thread pool cannot kill a task.
            logger.warning(
                "Embedded worker does not enforce the job time limit",
                extra={"job_timeout_seconds": config.job_timeout_seconds},
            )

    def initialize(self, config: QueueConfig) -> None:
        self.bind(config)

        if not self.is_eager:
            self._check_broker()
            if config.embedded_worker:
                self._start_embedded_worker(config)

        self._ready = True
        logger.info(
            "Queue initialized",
            extra={
                "queue": RUN_JOB_QUEUE,
                "eager": self.is_eager,
                "attempts": config.retry_policy.attempts,
                "embedded_worker": config.embedded_worker,
            },
        )

    def _check_broker(self) -> None:
        try:
            with self._app.connection_for_write() as conn:
                conn.ensure_connection(max_retries=1, timeout=3)
        except Exception as exc:
            raise QueueUnavailableError(f"Queue broker unreachable: {exc}") from exc

    def _start_embedded_worker(self, config: QueueConfig) -> None:
        worker = self._app.WorkController(
            app=self._app,
            pool_cls="threads",
            concurrency=config.concurrency,
            queues=[RUN_JOB_QUEUE],
            without_heartbeat=True,
            without_mingle=True,
            without_gossip=True,
        )
        thread = threading.Thread(target=worker.start, name="scheduler-queue-worker", daemon=True)
        thread.start()
        self._worker, self._worker_thread = worker, thread
        logger.info("Embedded queue worker started", extra={"concurrency": config.concurrency})

    def is_ready(self) -> bool:
        return self._ready

    def add_job(self, job: QueuedJob) -> str:
        if not self._ready:
            raise QueueUnavailableError("Queue not initialized")

        try:
            async_result = run_scheduled_job.apply_async(kwargs={"data": job.to_dict()}, queue=RUN_JOB_QUEUE)
        except Exception as exc:
            raise QueueUnavailableError(f"Failed to enqueue job '{job.job_name}': {exc}") from exc

        logger.info(
            "Job added to queue",
            extra={"job_name": job.job_name, "execution_id": job.execution_id, "task_id": async_result.id},
        )
        return async_result.id

    def process_job(self, data: dict[str, Any], *, attempt: int = 1, max_attempts: int | None = None) -> JobResult:
        job = QueuedJob.from_dict(data)
        context = JobContext(
            job_id=job.job_id,
            job_name=job.job_name,
            job_key=job.job_key,
            execution_id=job.execution_id,
            config=job.config,
            started_at=from_millis(job.started_at),
            targets=job.targets,
            attempt=attempt,
            max_attempts=max_attempts or self.retry_policy.attempts,
        )
        logger.info(
            "Processing job",
            extra={"job_name": job.job_name, "execution_id": job.execution_id, "attempt": attempt},
        )
        return asyncio.run(self._run(job.job_key, context))

    async def _run(self, name: str, context: JobContext) -> JobResult:
        result = await self._registry.execute(name, context)

        handler = self._config.notification_handler if self._config else None
        if result.notifications and handler is not None:
            try:
                await handler(result.notifications, context)
            except Exception as exc:
                # The run itself is already recorded; a delivery failure must not re-run it.
                logger.error(
                    "Notification handler failed",
                    extra={"job_name": name, "execution_id": context.execution_id, "error": str(exc)},
                )
        return result

    def get_queue_stats(self) -> QueueStats:
        if self.is_eager or not self._ready:
            return QueueStats(waiting=0, active=0, scheduled=0, reserved=0)

        waiting = 0
        try:
            with self._app.connection_for_read() as conn:
                waiting = int(conn.default_channel.queue_declare(queue=RUN_JOB_QUEUE, passive=True).message_count)
        except Exception as exc:
            logger.warning("Could not read queue length", extra={"error": str(exc)})

        inspect = self._app.control.inspect(timeout=1)

        def _count(reply: dict[str, list] | None) -> int:
            return sum(len(v) for v in (reply or {}).values())

        return QueueStats(
            waiting=waiting,
            active=_count(inspect.active()),
            scheduled=_count(inspect.scheduled()),
            reserved=_count(inspect.reserved()),
        )

    def pause(self) -> None:
        if not self.is_eager:
            self._app.control.cancel_consumer(RUN_JOB_QUEUE)
        logger.info("Queue paused")

    def resume(self) -> None:
        if not self.is_eager:
            self._app.control.add_consumer(RUN_JOB_QUEUE)
        logger.info("Queue resumed")

    def shutdown(self) -> None:
        """Stop accepting work and let the embedded worker finish in-flight jobs."""
        self._ready = False
        if self._worker is not None:
            self._worker.stop(in_sighandler=False)
            if self._worker_thread is not None:
                self._worker_thread.join(timeout=30)
            self._worker, self._worker_thread = None, None
        if run_scheduled_job.manager is self:
            run_scheduled_job.manager = None
        logger.info("Queue shut down")
