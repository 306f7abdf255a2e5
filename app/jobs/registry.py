from __future__ import annotations

import logging

from app.core.errors import JobNotFoundError
from app.jobs.types import JobContext, JobDefaults, JobDefinition, JobResult

logger = logging.getLogger(__name__)


class JobRegistry:
    """
    Catalog of job definitions, keyed by name.

    Constructed once at startup and handed to the scheduler and queue manager.
    Re-registering a name overwrites the previous definition (last writer wins).
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobDefinition] = {}

    def register(self, job: JobDefinition) -> None:
        if job.name in self._jobs:
            logger.warning("Job already registered, overwriting", extra={"job_name": job.name})
        self._jobs[job.name] = job
        logger.info("Registered job", extra={"job_name": job.name})

    def get(self, name: str) -> JobDefinition | None:
        return self._jobs.get(name)

    def has(self, name: str) -> bool:
        return name in self._jobs

    def get_all(self) -> list[JobDefinition]:
        return list(self._jobs.values())

    async def execute(self, name: str, context: JobContext) -> JobResult:
        job = self.get(name)
        if job is None:
            raise JobNotFoundError(f"Job '{name}' not found in registry")

        logger.info("Executing job", extra={"job_name": name, "execution_id": context.execution_id})
        try:
            result = await job.handler(context)
        except Exception as exc:
            logger.error(
                "Job failed",
                extra={"job_name": name, "execution_id": context.execution_id, "error": str(exc)},
            )
            raise

        logger.info(
            "Job completed",
            extra={
                "job_name": name,
                "execution_id": context.execution_id,
                "success": result.success,
                "users_affected": result.users_affected,
            },
        )
        return result

    def get_defaults(self) -> list[JobDefaults]:
        """Seed rows for every definition that wants a schedule record at startup."""
        return [
            JobDefaults(
                name=job.name,
                display_name=job.display_name,
                description=job.description,
                schedule=job.default_schedule,
                timezone=job.default_timezone,
                config=dict(job.default_config),
            )
            for job in self._jobs.values()
            if job.seed_on_startup
        ]
