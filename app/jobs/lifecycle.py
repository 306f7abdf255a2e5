"""
Status-tracking wrapper around a job's ``execute`` coroutine.

Job authors only return a JobResult; the wrapper moves the execution record
through running -> success/failed. Hooks run in a fixed order:

  before_execute  mark the record running (a failure here aborts the run)
  execute         the job's own logic
  after_execute   record summary/users_affected (only if execute returned)
  on_error        record the error, then re-raise for the queue's retry policy

Handlers are delivered at-least-once by the queue, so ``execute`` must be safe
to run again after a partial failure.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

from app.core.errors import SchedulerError
from app.jobs.types import DEFAULT_TIMEZONE, JobConfig, JobContext, JobDefinition, JobHandler, JobResult

logger = logging.getLogger(__name__)


class ExecutionHooks(Protocol):
    def mark_running(self, execution_id: str, *, attempt: int = 1) -> Any: ...

    def mark_success(
        self,
        execution_id: str,
        *,
        summary: str,
        users_affected: int,
        details: dict[str, Any] | None = None,
        errors: list[str] | None = None,
    ) -> Any: ...

    def mark_failed(
        self,
        execution_id: str,
        *,
        error: str,
        summary: str | None = None,
        users_affected: int = 0,
    ) -> Any: ...

    def record_attempt_error(self, execution_id: str, *, error: str, attempt: int) -> Any: ...


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _after_execute(name: str, context: JobContext, result: JobResult, hooks: ExecutionHooks) -> None:
    if result.success:
        logger.info(
            "Completed",
            extra={"job_name": name, "execution_id": context.execution_id, "users_affected": result.users_affected},
        )
        hooks.mark_success(
            context.execution_id,
            summary=result.summary,
            users_affected=result.users_affected,
            details=result.details,
            errors=result.errors,
        )
        return

    # Handler reported a logical failure without raising: nothing to retry.
    error = "; ".join(result.errors or []) or result.summary
    logger.warning("Reported failure", extra={"job_name": name, "execution_id": context.execution_id, "error": error})
    hooks.mark_failed(
        context.execution_id,
        error=error,
        summary=result.summary,
        users_affected=result.users_affected,
    )


def _on_error(name: str, context: JobContext, exc: Exception, hooks: ExecutionHooks) -> None:
    error = _error_text(exc)
    logger.error(
        "Failed",
        extra={
            "job_name": name,
            "execution_id": context.execution_id,
            "attempt": context.attempt,
            "max_attempts": context.max_attempts,
            "error": error,
        },
    )
    try:
        if context.is_final_attempt:
            hooks.mark_failed(context.execution_id, error=error)
        else:
            hooks.record_attempt_error(context.execution_id, error=error, attempt=context.attempt)
    except SchedulerError as hook_exc:
        logger.error(
            "Could not record failure",
            extra={"job_name": name, "execution_id": context.execution_id, "error": str(hook_exc)},
        )


def with_lifecycle(
    name: str,
    execute: Callable[[JobContext], Awaitable[JobResult]],
    hooks: ExecutionHooks,
) -> JobHandler:
    async def handler(context: JobContext) -> JobResult:
        try:
            logger.info("Starting execution", extra={"job_name": name, "execution_id": context.execution_id})
            hooks.mark_running(context.execution_id, attempt=context.attempt)
            result = await execute(context)
            _after_execute(name, context, result, hooks)
            return result
        except Exception as exc:
            _on_error(name, context, exc, hooks)
            raise

    return handler


def define_job(
    *,
    name: str,
    display_name: str,
    description: str,
    default_schedule: str,
    execute: Callable[[JobContext], Awaitable[JobResult]],
    hooks: ExecutionHooks,
    default_timezone: str = DEFAULT_TIMEZONE,
    default_config: JobConfig | None = None,
    seed_on_startup: bool = True,
) -> JobDefinition:
    return JobDefinition(
        name=name,
        display_name=display_name,
        description=description,
        default_schedule=default_schedule,
        handler=with_lifecycle(name, execute, hooks),
        default_timezone=default_timezone,
        default_config=dict(default_config or {}),
        seed_on_startup=seed_on_startup,
    )
