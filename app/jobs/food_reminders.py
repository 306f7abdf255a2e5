"""
Meal-selection reminder jobs.

- unselected-food-reminder: daily at 22:00 Tehran time, users without a
  selection for tomorrow.
- weekly-food-check: Fridays at 22:00, users with at least
  ``min_unselected_days`` open days in the next ``days_ahead`` days.

Both only build notifications; delivery happens after the run is recorded.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any

from app.jobs.lifecycle import ExecutionHooks, define_job
from app.jobs.types import JobConfig, JobContext, JobDefinition, JobNotification, JobResult
from app.services.meal_selection import MealSelectionSource, UserMealStatus

logger = logging.getLogger(__name__)

DAILY_REMINDER = "unselected-food-reminder"
WEEKLY_CHECK = "weekly-food-check"


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "on"}
    return bool(v)


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class FoodReminderConfig:
    include_recommendations: bool = True
    silent_notifications: bool = False

    @classmethod
    def from_config(cls, config: JobConfig) -> FoodReminderConfig:
        return cls(
            include_recommendations=_as_bool(config.get("include_recommendations"), True),
            silent_notifications=_as_bool(config.get("silent_notifications"), False),
        )


@dataclass(frozen=True)
class WeeklyFoodCheckConfig:
    days_ahead: int = 7
    min_unselected_days: int = 2
    include_recommendations: bool = True
    silent_notifications: bool = False

    @classmethod
    def from_config(cls, config: JobConfig) -> WeeklyFoodCheckConfig:
        return cls(
            days_ahead=max(1, _as_int(config.get("days_ahead"), 7)),
            min_unselected_days=max(1, _as_int(config.get("min_unselected_days"), 2)),
            include_recommendations=_as_bool(config.get("include_recommendations"), True),
            silent_notifications=_as_bool(config.get("silent_notifications"), False),
        )


def filter_targeted(users: list[UserMealStatus], context: JobContext) -> list[UserMealStatus]:
    """Keep only resolved targets when the job has targeting configured."""
    targets = context.targets
    if targets is None or not targets.is_restricted:
        return users
    if targets.everyone:
        # The meal service knows users the pack table does not; only drop exclusions.
        excluded = set(targets.exclude_user_ids)
        return [u for u in users if u.telegram_user_id not in excluded]
    allowed = set(targets.final_user_ids)
    return [u for u in users if u.telegram_user_id in allowed]


def recommend(user: UserMealStatus) -> list[tuple[str, str]]:
    """One (date, food) suggestion per open day: the first option offered."""
    return [(date, foods[0]) for date, foods in user.options_by_date().items() if foods]


def _option_lines(user: UserMealStatus) -> list[str]:
    return [
        f"   📅 {html.escape(date)}: {html.escape(' | '.join(foods))}"
        for date, foods in user.options_by_date().items()
    ]


def _recommendation_lines(user: UserMealStatus) -> list[str]:
    recs = recommend(user)
    if not recs:
        return []
    lines = ["💡 <b>Our suggestion:</b>"]
    lines += [f"   ➤ {html.escape(date)}: <b>{html.escape(food)}</b>" for date, food in recs]
    lines.append("")
    return lines


def build_daily_message(user: UserMealStatus, include_recommendations: bool) -> str:
    lines = [
        "⏰ <b>Meal selection reminder</b>",
        "",
        "Hi! 👋",
        "You haven't picked a meal for tomorrow yet. ⚠️",
        "",
        "🍽️ <b>Available options:</b>",
        *_option_lines(user),
        "",
    ]
    if include_recommendations:
        lines += _recommendation_lines(user)
    lines.append("Open the meal panel or reply here to choose. 📲")
    return "\n".join(lines)


def build_weekly_message(user: UserMealStatus, include_recommendations: bool) -> str:
    lines = [
        "📅 <b>Weekly meal check</b>",
        "",
        "Hi! 👋",
        f"You still have {user.upcoming_unselected_count} day(s) without a meal next week. ⚠️",
        "",
        "🍽️ <b>Open days:</b>",
        *_option_lines(user),
        "",
    ]
    if include_recommendations:
        lines += _recommendation_lines(user)
    lines += [
        "💬 Reply here or open the meal panel to choose. 📲",
        "",
        f"📊 {user.upcoming_unselected_count} of {user.total_available_days} days not selected",
    ]
    return "\n".join(lines)


def build_food_reminder_job(hooks: ExecutionHooks, meal_source: MealSelectionSource) -> JobDefinition:
    async def execute(context: JobContext) -> JobResult:
        config = FoodReminderConfig.from_config(context.config)
        users = filter_targeted(await meal_source.users_unselected_tomorrow(), context)

        if not users:
            return JobResult(success=True, users_affected=0, summary="All users have selected food for tomorrow")

        notifications = [
            JobNotification(
                telegram_user_id=u.telegram_user_id,
                message=build_daily_message(u, config.include_recommendations),
                parse_mode="HTML",
                silent=config.silent_notifications,
            )
            for u in users
        ]
        return JobResult(
            success=True,
            users_affected=len(users),
            summary=f"Prepared reminders for {len(users)} users",
            notifications=notifications,
            details={"notifications": len(notifications), "users": [u.telegram_user_id for u in users]},
        )

    return define_job(
        name=DAILY_REMINDER,
        display_name="🍽️ Food Selection Reminder",
        description="Reminds users who have not selected food for tomorrow at 10 PM daily",
        default_schedule="0 22 * * *",
        default_timezone="Asia/Tehran",
        default_config={"include_recommendations": True, "silent_notifications": False},
        execute=execute,
        hooks=hooks,
    )


def build_weekly_food_check_job(hooks: ExecutionHooks, meal_source: MealSelectionSource) -> JobDefinition:
    async def execute(context: JobContext) -> JobResult:
        config = WeeklyFoodCheckConfig.from_config(context.config)
        users = filter_targeted(await meal_source.users_with_unselected_days(config.days_ahead), context)
        users = [u for u in users if u.upcoming_unselected_count >= config.min_unselected_days]

        if not users:
            return JobResult(
                success=True,
                users_affected=0,
                summary=f"No users found with {config.min_unselected_days}+ unselected days",
            )

        notifications: list[JobNotification] = []
        errors: list[str] = []
        for u in users:
            try:
                message = build_weekly_message(u, config.include_recommendations)
            except Exception as exc:
                logger.error(
                    "Error building message",
                    extra={"job_name": WEEKLY_CHECK, "user_id": u.telegram_user_id, "error": str(exc)},
                )
                errors.append(f"{u.telegram_user_id}: {exc}")
                continue
            notifications.append(
                JobNotification(
                    telegram_user_id=u.telegram_user_id,
                    message=message,
                    parse_mode="HTML",
                    silent=config.silent_notifications,
                )
            )

        return JobResult(
            success=True,
            users_affected=len(users),
            summary=f"Prepared weekly food check for {len(users)} users",
            notifications=notifications,
            errors=errors or None,
            details={
                "notifications": len(notifications),
                "days_checked": config.days_ahead,
                "min_threshold": config.min_unselected_days,
                "users": [{"id": u.telegram_user_id, "unselected_count": u.upcoming_unselected_count} for u in users],
            },
        )

    return define_job(
        name=WEEKLY_CHECK,
        display_name="📅 Weekly Food Check",
        description="Checks unselected food for the upcoming week every Friday night",
        default_schedule="0 22 * * 5",
        default_timezone="Asia/Tehran",
        default_config={
            "days_ahead": 7,
            "min_unselected_days": 2,
            "include_recommendations": True,
            "silent_notifications": False,
        },
        execute=execute,
        hooks=hooks,
    )
