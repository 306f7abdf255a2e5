from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.core.celery_settings import eager_overrides
from app.core.config import settings
from app.core.logging import setup_logging

RUN_JOB_QUEUE = "scheduled-jobs"

# IMPORTANT: the variable name MUST be `celery_app`
celery_app = Celery(
    "notification_scheduler",
    broker=settings.broker_url,
    backend=settings.result_backend or settings.broker_url,
    include=["app.worker.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="UTC",
    task_default_queue=RUN_JOB_QUEUE,
    task_track_started=True,
    # at-least-once: a job whose worker dies is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.queue_concurrency,
    task_time_limit=settings.queue_job_timeout_seconds,
    result_expires=settings.queue_result_expires_seconds,
)

celery_app.conf.update(eager_overrides())


@celery_setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    setup_logging(settings.log_level)
