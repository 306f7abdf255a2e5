"""
Process wiring for the scheduler subsystem.

``build_runtime`` assembles registry, tracker, dispatcher, queue and scheduler
once per process; ``start_runtime`` / ``stop_runtime`` bracket the API
lifespan. Celery pool processes get a worker-only runtime (no tick loop) via
``start_worker_runtime``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.errors import QueueUnavailableError
from app.db.session import init_db, make_engine, make_session_factory
from app.jobs import register_all_jobs
from app.jobs.registry import JobRegistry
from app.services.cron import utcnow
from app.services.execution_tracker import ExecutionTracker
from app.services.meal_selection import MealSelectionClient, MealSelectionSource, StaticMealSource
from app.services.notifications import MessagingClient, NotificationDispatcher, TelegramMessenger
from app.services.scheduler import Scheduler
from app.services.targeting import MembershipLookup, SqlMembershipDirectory
from app.worker.queue import QueueConfig, QueueManager, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class SchedulerRuntime:
    settings: Settings
    session_factory: sessionmaker[Session]
    registry: JobRegistry
    tracker: ExecutionTracker
    membership: MembershipLookup
    dispatcher: NotificationDispatcher
    queue: QueueManager
    scheduler: Scheduler
    engine: Engine | None = None


def build_runtime(
    settings: Settings = default_settings,
    *,
    session_factory: sessionmaker[Session] | None = None,
    messaging_client: MessagingClient | None = None,
    meal_source: MealSelectionSource | None = None,
    membership: MembershipLookup | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SchedulerRuntime:
    engine: Engine | None = None
    if session_factory is None:
        engine = make_engine(settings.database_url)
        session_factory = make_session_factory(engine)

    tracker = ExecutionTracker(session_factory, clock=clock)
    membership = membership or SqlMembershipDirectory(session_factory)

    if meal_source is None:
        if settings.meal_api_base_url:
            meal_source = MealSelectionClient(settings.meal_api_base_url, token=settings.meal_api_token)
        else:
            logger.warning("MEAL_API_BASE_URL not set; food reminder jobs will find no users")
            meal_source = StaticMealSource()

    registry = JobRegistry()
    register_all_jobs(registry, tracker, meal_source)

    dispatcher = NotificationDispatcher(
        messages_per_second=settings.messages_per_second,
        max_retries=settings.notify_max_retries,
        base_delay_ms=settings.notify_retry_base_delay_ms,
    )
    if messaging_client is None and settings.telegram_bot_token:
        messaging_client = TelegramMessenger(settings.telegram_bot_token)
    if messaging_client is not None:
        dispatcher.initialize(messaging_client)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set; notifications will not be delivered")

    queue = QueueManager(registry)
    scheduler = Scheduler(
        tracker,
        registry,
        queue,
        membership,
        clock=clock,
        tick_seconds=settings.tick_seconds,
        max_jobs_per_tick=settings.max_jobs_per_tick,
        stale_execution_seconds=settings.stale_execution_seconds,
    )

    return SchedulerRuntime(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        tracker=tracker,
        membership=membership,
        dispatcher=dispatcher,
        queue=queue,
        scheduler=scheduler,
        engine=engine,
    )


def queue_config_for(runtime: SchedulerRuntime) -> QueueConfig:
    s = runtime.settings
    return QueueConfig(
        broker_url=s.broker_url,
        notification_handler=runtime.dispatcher.deliver,
        retry_policy=RetryPolicy(
            attempts=max(1, s.queue_attempts),
            backoff_type=s.queue_backoff_type,
            backoff_delay_ms=s.queue_backoff_delay_ms,
        ),
        result_expires_seconds=s.queue_result_expires_seconds,
        concurrency=s.queue_concurrency,
        job_timeout_seconds=s.queue_job_timeout_seconds,
        embedded_worker=s.queue_embedded_worker,
    )


def start_runtime(runtime: SchedulerRuntime, *, start_ticking: bool = True) -> bool:
    """
    Initialize and start the scheduler. Returns False when the queue is
    unreachable outside production (scheduler stays disabled); in production
    the QueueUnavailableError propagates so the process fails to start.
    """
    if runtime.engine is not None:
        init_db(runtime.engine)

    try:
        runtime.scheduler.initialize(queue_config_for(runtime))
    except QueueUnavailableError as exc:
        if runtime.settings.is_production:
            logger.error("Queue unavailable at startup", extra={"error": str(exc)})
            raise
        logger.warning("Queue unavailable; scheduler disabled", extra={"error": str(exc)})
        return False

    if start_ticking:
        runtime.scheduler.start()
    return True


def stop_runtime(runtime: SchedulerRuntime) -> None:
    runtime.scheduler.shutdown()
    if runtime.engine is not None:
        runtime.engine.dispose()


_worker_runtime: SchedulerRuntime | None = None


def start_worker_runtime(settings: Settings = default_settings) -> SchedulerRuntime:
    """Celery pool process: handlers and delivery only, no tick loop or seeding."""
    global _worker_runtime
    runtime = build_runtime(settings)
    runtime.queue.bind(queue_config_for(runtime))
    _worker_runtime = runtime
    logger.info("Worker runtime ready", extra={"jobs": [j.name for j in runtime.registry.get_all()]})
    return runtime


def stop_worker_runtime() -> None:
    global _worker_runtime
    if _worker_runtime is None:
        return
    if _worker_runtime.engine is not None:
        _worker_runtime.engine.dispose()
    _worker_runtime = None
