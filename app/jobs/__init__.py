from app.jobs.custom_message import build_custom_message_job
from app.jobs.food_reminders import build_food_reminder_job, build_weekly_food_check_job
from app.jobs.lifecycle import ExecutionHooks
from app.jobs.registry import JobRegistry
from app.services.meal_selection import MealSelectionSource


def register_all_jobs(registry: JobRegistry, hooks: ExecutionHooks, meal_source: MealSelectionSource) -> None:
    registry.register(build_food_reminder_job(hooks, meal_source))
    registry.register(build_weekly_food_check_job(hooks, meal_source))
    registry.register(build_custom_message_job(hooks))
