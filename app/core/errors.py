class SchedulerError(Exception):
    """Base class for scheduler subsystem errors."""


class JobNotFoundError(SchedulerError):
    pass


class JobExistsError(SchedulerError):
    pass


class ExecutionNotFoundError(SchedulerError):
    pass


class InvalidScheduleError(SchedulerError, ValueError):
    """Cron expression or timezone that cannot be evaluated."""


class InvalidTransitionError(SchedulerError):
    """Execution status change that would regress a run."""

    def __init__(self, execution_id: str, current: str, requested: str) -> None:
        super().__init__(f"Execution {execution_id}: cannot move from '{current}' to '{requested}'")
        self.execution_id = execution_id
        self.current = current
        self.requested = requested


class QueueUnavailableError(SchedulerError):
    pass
