from app.models.scheduled_job import ScheduledJob
from app.models.job_execution import JobExecution
from app.models.job_target import ScheduledJobTargetPack, ScheduledJobTargetUser
from app.models.user_pack_assignment import UserPackAssignment

__all__ = [
    "ScheduledJob",
    "JobExecution",
    "ScheduledJobTargetUser",
    "ScheduledJobTargetPack",
    "UserPackAssignment",
]
