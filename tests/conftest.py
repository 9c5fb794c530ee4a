"""Pytest configuration and fixtures."""

from datetime import date, datetime, time, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from therapy_scheduler.config import get_settings
from therapy_scheduler.core.models import Base
from therapy_scheduler.observability.logger import ObservabilityLogger
from therapy_scheduler.scheduling.models import (
    ScheduledSession,
    SchedulingRequest,
    TherapistAvailability,
)

THERAPIST_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
OTHER_THERAPIST_ID = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
STUDENT_ID = "cccccccc-cccc-cccc-cccc-cccccccccccc"
SUBSCRIPTION_ID = "dddddddd-dddd-dddd-dddd-dddddddddddd"

# A fixed Monday for tests that never touch "today".
MONDAY = date(2026, 3, 2)


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep tests off the real .env, telemetry directory and API key."""
    monkeypatch.setenv("OBSERVABILITY_ENABLED", "false")
    monkeypatch.setenv("OBSERVABILITY_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("API_KEY", "")
    monkeypatch.setenv("DEBUG_MODE", "false")
    get_settings.cache_clear()
    ObservabilityLogger._instance = None
    yield
    get_settings.cache_clear()
    ObservabilityLogger._instance = None


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def future_monday():
    """A Monday at least a week ahead, for rules that compare against today."""
    day = date.today() + timedelta(days=14)
    return day - timedelta(days=day.weekday())


@pytest.fixture
def availability():
    """Therapist works Monday to Friday, 09:00-17:00."""
    return [
        TherapistAvailability(
            therapist_id=THERAPIST_ID,
            day_of_week=dow,
            start_time=time(9, 0),
            end_time=time(17, 0),
        )
        for dow in range(5)
    ]


@pytest.fixture
def two_therapist_availability(availability):
    return availability + [
        TherapistAvailability(
            therapist_id=OTHER_THERAPIST_ID,
            day_of_week=dow,
            start_time=time(9, 0),
            end_time=time(17, 0),
        )
        for dow in range(5)
    ]


@pytest.fixture
def make_session():
    """Factory for sessions; defaults to Monday 10:00-10:45 with THERAPIST_ID."""

    def _make(**overrides) -> ScheduledSession:
        start = overrides.pop("start_time", time(10, 0))
        duration = overrides.pop("duration_minutes", 45)
        end = overrides.pop(
            "end_time",
            (datetime.combine(MONDAY, start) + timedelta(minutes=duration)).time(),
        )
        fields = {
            "therapist_id": THERAPIST_ID,
            "student_id": STUDENT_ID,
            "student_subscription_id": SUBSCRIPTION_ID,
            "scheduled_date": MONDAY,
            "start_time": start,
            "end_time": end,
            "duration_minutes": duration,
        }
        fields.update(overrides)
        return ScheduledSession(**fields)

    return _make


@pytest.fixture
def scheduling_request():
    """Four weeks, twice a week, 45 minute sessions."""
    return SchedulingRequest(
        student_subscription_id=SUBSCRIPTION_ID,
        student_id=STUDENT_ID,
        start_date=MONDAY,
        end_date=MONDAY + timedelta(days=27),
        total_sessions=8,
        sessions_per_week=2,
        session_duration=45,
    )


# ---------------------------------------------------------------------------
# Database fixtures: in-memory SQLite
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db_session(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as sess:
        yield sess
        await sess.rollback()
