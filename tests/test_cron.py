from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from app.core.errors import InvalidScheduleError
from app.services.cron import calculate_next_run, next_run_after, to_millis, validate_schedule

TEHRAN = ZoneInfo("Asia/Tehran")


def test_next_run_is_evaluated_in_job_timezone():
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)  # 15:30 Tehran

    nxt = next_run_after("0 22 * * *", "Asia/Tehran", now)

    assert nxt.astimezone(TEHRAN) == datetime(2026, 3, 10, 22, 0, tzinfo=TEHRAN)
    assert nxt.tzinfo == timezone.utc


def test_next_run_is_strictly_after_now():
    now = datetime(2026, 3, 10, 22, 0, tzinfo=TEHRAN)

    nxt = next_run_after("0 22 * * *", "Asia/Tehran", now)

    assert nxt > now
    assert nxt.astimezone(TEHRAN).day == 11


def test_weekly_schedule_lands_on_friday():
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    nxt = next_run_after("0 22 * * 5", "Asia/Tehran", now).astimezone(TEHRAN)

    assert nxt.weekday() == 4
    assert (nxt.hour, nxt.minute) == (22, 0)


@pytest.mark.parametrize("expr", ["", "not a cron", "61 * * * *", "* * * *", "0 0 * * * *"])
def test_invalid_cron_is_rejected(expr):
    with pytest.raises(InvalidScheduleError):
        validate_schedule(expr, "UTC")


def test_unknown_timezone_is_rejected():
    with pytest.raises(InvalidScheduleError):
        validate_schedule("0 22 * * *", "Mars/Olympus")


def test_calculate_next_run_returns_none_for_bad_schedule():
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    assert calculate_next_run("bogus", "UTC", now) is None
    assert calculate_next_run("0 * * * *", "UTC", now) == to_millis(datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc))
