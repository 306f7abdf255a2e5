from __future__ import annotations

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from app.core.errors import InvalidScheduleError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def get_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleError(f"Unknown timezone: {tz_name!r}") from exc


def validate_schedule(schedule: str, tz_name: str) -> None:
    """Raise InvalidScheduleError unless the cron expression and timezone both evaluate."""
    expr = (schedule or "").strip()
    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise InvalidScheduleError(f"Invalid cron expression: {schedule!r}")
    get_zone(tz_name)


def next_run_after(schedule: str, tz_name: str, now: datetime) -> datetime:
    """Earliest instant strictly after ``now`` matching ``schedule`` in ``tz_name``."""
    validate_schedule(schedule, tz_name)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    local_now = now.astimezone(get_zone(tz_name))
    it = croniter(schedule.strip(), local_now)
    nxt = it.get_next(datetime)
    while nxt <= local_now:
        nxt = it.get_next(datetime)
    return nxt.astimezone(timezone.utc)


def calculate_next_run(schedule: str, tz_name: str, now: datetime) -> int | None:
    """Like next_run_after, in epoch millis; None (never due) for schedules that cannot be evaluated."""
    try:
        return to_millis(next_run_after(schedule, tz_name, now))
    except InvalidScheduleError as exc:
        logger.warning(
            "Failed to calculate next run",
            extra={"schedule": schedule, "timezone": tz_name, "error": str(exc)},
        )
        return None
