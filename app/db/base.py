from app.db.base_class import Base  # noqa: F401

# Import all the models here so that Base has them registered
# This file should NOT be imported by models.
from app.models.scheduled_job import ScheduledJob  # noqa: F401
from app.models.job_execution import JobExecution  # noqa: F401
from app.models.job_target import ScheduledJobTargetPack, ScheduledJobTargetUser  # noqa: F401
from app.models.user_pack_assignment import UserPackAssignment  # noqa: F401
