import asyncio
from datetime import datetime, timezone

from app.jobs.custom_message import build_custom_message_job
from app.jobs.food_reminders import (
    WeeklyFoodCheckConfig,
    build_daily_message,
    build_food_reminder_job,
    build_weekly_food_check_job,
    recommend,
)
from app.jobs.types import JobContext, JobTargets
from app.services.meal_selection import MealOption, UserMealStatus
from app.services.targeting import StaticMembership, resolve_targets
from conftest import RecordingHooks


def _context(name, config=None, targets=None):
    return JobContext(
        job_id="job-1",
        job_name=name,
        job_key=name,
        execution_id="ex-1",
        config=config or {},
        started_at=datetime(2026, 3, 10, tzinfo=timezone.utc),
        targets=targets,
    )


def test_daily_reminder_builds_one_html_message_per_user(meal_source):
    hooks = RecordingHooks()
    job = build_food_reminder_job(hooks, meal_source)

    result = asyncio.run(job.handler(_context(job.name, {"silent_notifications": True})))

    assert result.success is True
    assert result.users_affected == 1
    (n,) = result.notifications
    assert n.telegram_user_id == "u1"
    assert n.parse_mode == "HTML"
    assert n.silent is True
    assert "Kebab | Salad" in n.message
    assert "<b>Kebab</b>" in n.message  # first option suggested
    assert hooks.kinds() == ["running", "success"]


def test_daily_reminder_without_recommendations(meal_source):
    job = build_food_reminder_job(RecordingHooks(), meal_source)

    result = asyncio.run(job.handler(_context(job.name, {"include_recommendations": False})))

    assert "suggestion" not in result.notifications[0].message


def test_daily_reminder_respects_targets(meal_source):
    job = build_food_reminder_job(RecordingHooks(), meal_source)
    targets = JobTargets(include_user_ids=["u2"], final_user_ids=["u2"])

    result = asyncio.run(job.handler(_context(job.name, targets=targets)))

    assert result.success is True
    assert result.users_affected == 0
    assert result.summary == "All users have selected food for tomorrow"


def test_weekly_check_applies_threshold(meal_source):
    job = build_weekly_food_check_job(RecordingHooks(), meal_source)

    result = asyncio.run(job.handler(_context(job.name, job.default_config)))

    assert [n.telegram_user_id for n in result.notifications] == ["u1"]
    assert result.details["min_threshold"] == 2
    assert "2 of 5 days" in result.notifications[0].message

    lowered = asyncio.run(job.handler(_context(job.name, {"min_unselected_days": 1})))
    assert lowered.users_affected == 2


def test_exclude_only_targeting_keeps_everyone_else(meal_source):
    job = build_weekly_food_check_job(RecordingHooks(), meal_source)
    targets = resolve_targets([], ["u2"], [], StaticMembership())

    result = asyncio.run(job.handler(_context(job.name, {"min_unselected_days": 1}, targets=targets)))

    assert [n.telegram_user_id for n in result.notifications] == ["u1"]
    assert result.users_affected == 1


def test_weekly_config_tolerates_bad_values():
    cfg = WeeklyFoodCheckConfig.from_config({"days_ahead": "x", "min_unselected_days": "3", "silent_notifications": "yes"})

    assert cfg.days_ahead == 7
    assert cfg.min_unselected_days == 3
    assert cfg.silent_notifications is True


def test_user_supplied_names_are_escaped():
    user = UserMealStatus(
        telegram_user_id="u1",
        unselected_options=[MealOption("2026-03-11", "Fish & <Chips>")],
        upcoming_unselected_count=1,
    )

    assert recommend(user) == [("2026-03-11", "Fish & <Chips>")]

    assert "Fish &amp; &lt;Chips&gt;" in build_daily_message(user, include_recommendations=True)


def test_custom_message_requires_text():
    hooks = RecordingHooks()
    job = build_custom_message_job(hooks)

    result = asyncio.run(job.handler(_context(job.name, {"message": "   "})))

    assert result.success is False
    assert result.errors == ["Custom message text is required"]
    assert hooks.kinds() == ["running", "failed"]
    assert job.seed_on_startup is False


def test_custom_message_exclude_only_reaches_remaining_users():
    job = build_custom_message_job(RecordingHooks())
    targets = resolve_targets([], ["u2"], [], StaticMembership({"lunch": ["u1", "u2", "u3"]}))

    result = asyncio.run(job.handler(_context(job.name, {"message": "Hi"}, targets=targets)))

    assert [n.telegram_user_id for n in result.notifications] == ["u1", "u3"]
