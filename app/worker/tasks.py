from __future__ import annotations

import logging

from celery import Task
from celery.signals import worker_process_init, worker_process_shutdown

from app.core.errors import InvalidTransitionError, QueueUnavailableError
from app.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


class ScheduledJobTask(Task):
    # Bound by QueueManager.initialize / bind (API process or worker process)
    manager = None


@celery_app.task(bind=True, base=ScheduledJobTask, name="scheduler.run_job")
def run_scheduled_job(self, data: dict) -> dict:
    manager = self.manager
    if manager is None:
        raise QueueUnavailableError("Queue manager not bound in this process")

    policy = manager.retry_policy
    attempt = self.request.retries + 1
    try:
        result = manager.process_job(data, attempt=attempt, max_attempts=policy.attempts)
        return result.to_dict()
    except InvalidTransitionError:
        # The run already ended (reaped or finished elsewhere); retrying cannot help.
        raise
    except Exception as exc:
        if attempt >= policy.attempts:
            raise
        logger.info(
            "Retrying job",
            extra={
                "job_name": data.get("job_name"),
                "execution_id": data.get("execution_id"),
                "attempt": attempt,
                "countdown": policy.countdown(attempt),
            },
        )
        raise self.retry(exc=exc, countdown=policy.countdown(attempt), max_retries=policy.attempts - 1)


@worker_process_init.connect
def _init_worker_process(**_kwargs) -> None:
    # Forked pool children need their own DB engine, registry and bound manager.
    from app.services.runtime import start_worker_runtime

    start_worker_runtime()


@worker_process_shutdown.connect
def _shutdown_worker_process(**_kwargs) -> None:
    from app.services.runtime import stop_worker_runtime

    stop_worker_runtime()
