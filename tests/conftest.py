import os

# Must be set before app modules are imported: Celery runs tasks inline under ENV=test.
os.environ["ENV"] = "test"

import dataclasses  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from app.core.config import settings  # noqa: E402
from app.db.session import init_db, make_engine, make_session_factory  # noqa: E402
from app.services.execution_tracker import ExecutionTracker  # noqa: E402
from app.services.meal_selection import MealOption, StaticMealSource, UserMealStatus  # noqa: E402
from app.services.runtime import build_runtime  # noqa: E402


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMessenger:
    """MessagingClient that records sends; queued exceptions are raised first."""

    def __init__(self, errors=None) -> None:
        self.sent = []
        self.calls = 0
        self.errors = list(errors or [])
        self.sessions = 0

    @asynccontextmanager
    async def session(self):
        self.sessions += 1
        yield self

    async def send_message(self, recipient_id, text, *, parse_mode=None, silent=False, reply_markup=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(
            {"recipient_id": recipient_id, "text": text, "parse_mode": parse_mode, "silent": silent}
        )
        return len(self.sent)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingHooks:
    def __init__(self) -> None:
        self.calls = []

    def mark_running(self, execution_id, *, attempt=1):
        self.calls.append(("running", execution_id, attempt))

    def mark_success(self, execution_id, *, summary, users_affected, details=None, errors=None):
        self.calls.append(("success", execution_id, summary, users_affected))

    def mark_failed(self, execution_id, *, error, summary=None, users_affected=0):
        self.calls.append(("failed", execution_id, error))

    def record_attempt_error(self, execution_id, *, error, attempt):
        self.calls.append(("attempt_error", execution_id, error, attempt))

    def kinds(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def clock():
    # Tuesday, 12:00 UTC (15:30 in Tehran)
    return FakeClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def tracker(session_factory, clock):
    return ExecutionTracker(session_factory, clock=clock)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def meal_source():
    return StaticMealSource(
        tomorrow=[
            UserMealStatus(
                telegram_user_id="u1",
                unselected_options=[MealOption("2026-03-11", "Kebab"), MealOption("2026-03-11", "Salad")],
                upcoming_unselected_count=1,
                total_available_days=1,
            ),
        ],
        upcoming=[
            UserMealStatus(
                telegram_user_id="u1",
                unselected_options=[MealOption("2026-03-14", "Pasta"), MealOption("2026-03-15", "Rice")],
                upcoming_unselected_count=2,
                total_available_days=5,
            ),
            UserMealStatus(
                telegram_user_id="u2",
                unselected_options=[MealOption("2026-03-14", "Pasta")],
                upcoming_unselected_count=1,
                total_available_days=5,
            ),
        ],
    )


@pytest.fixture
def test_settings():
    return dataclasses.replace(
        settings,
        database_url="sqlite://",
        env="test",
        queue_attempts=3,
        queue_backoff_delay_ms=1,
        messages_per_second=1000,
        notify_retry_base_delay_ms=0,
        stale_execution_seconds=0,
        telegram_bot_token=None,
        meal_api_base_url=None,
    )


@pytest.fixture
def runtime(test_settings, session_factory, messenger, meal_source, clock):
    rt = build_runtime(
        test_settings,
        session_factory=session_factory,
        messaging_client=messenger,
        meal_source=meal_source,
        clock=clock,
    )
    yield rt
    rt.queue.shutdown()
