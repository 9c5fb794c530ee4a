"""Tests for scheduling repositories using async SQLite."""

from __future__ import annotations

import uuid
from datetime import date, time

from sqlalchemy.ext.asyncio import AsyncSession

from therapy_scheduler.core.repository import (
    AvailabilityRepository,
    BulkOperationLogRepository,
    FreezeHistoryRepository,
    OptimizationRuleRepository,
    SubscriptionRepository,
    TherapistRepository,
    TherapySessionRepository,
    as_uuid,
    restore_session,
    rule_to_domain,
    session_from_domain,
    session_to_domain,
    snapshot_session,
    subscription_to_snapshot,
)
from therapy_scheduler.scheduling.models import (
    OptimizationAction,
    OptimizationActionType,
    OptimizationCondition,
    OptimizationRule,
    PriorityLevel,
    ScheduledSession,
    SessionStatus,
)

MONDAY = date(2026, 3, 2)


async def _therapist(session: AsyncSession, last_name: str = "Lopez", **kwargs):
    return await TherapistRepository(session).create(first_name="Maya", last_name=last_name, **kwargs)


async def _session_row(session: AsyncSession, therapist_id, day=MONDAY, start=time(10, 0), **kwargs):
    return await TherapySessionRepository(session).create(
        therapist_id=therapist_id,
        scheduled_date=day,
        start_time=start,
        end_time=time(start.hour, 45),
        duration_minutes=45,
        **kwargs,
    )


# --- Helpers ---

def test_as_uuid():
    value = uuid.uuid4()
    assert as_uuid(value) is value
    assert as_uuid(str(value)) == value
    assert as_uuid(None) is None


# --- Therapist ---

async def test_therapist_create_get_and_list(db_session: AsyncSession):
    repo = TherapistRepository(db_session)
    t = await _therapist(db_session)
    await _therapist(db_session, last_name="Adams", active=False)

    fetched = await repo.get_by_id(t.id)
    assert fetched is not None
    assert fetched.max_sessions_per_day == 8

    assert [x.last_name for x in await repo.list()] == ["Lopez"]
    assert [x.last_name for x in await repo.list(active_only=False)] == ["Adams", "Lopez"]


# --- Subscription ---

async def test_subscription_update_and_snapshot(db_session: AsyncSession):
    repo = SubscriptionRepository(db_session)
    sub = await repo.create(student_id=uuid.uuid4(), start_date=MONDAY, end_date=date(2026, 6, 30))

    updated = await repo.update(sub.id, freeze_days_used=5, end_date=date(2026, 7, 5), program_name=None)
    assert updated is not None
    assert updated.freeze_days_used == 5

    snap = subscription_to_snapshot(updated)
    assert snap.id == str(sub.id)
    assert snap.status == "active"
    assert snap.end_date == date(2026, 7, 5)
    assert snap.total_freeze_days_allowed == 30

    assert await repo.update(uuid.uuid4(), freeze_days_used=1) is None


# --- Sessions ---

async def test_session_filters(db_session: AsyncSession):
    repo = TherapySessionRepository(db_session)
    t1 = await _therapist(db_session)
    t2 = await _therapist(db_session, last_name="Okafor")
    student = uuid.uuid4()
    a = await _session_row(db_session, t1.id, student_id=student)
    b = await _session_row(db_session, t2.id, day=date(2026, 3, 3))
    c = await _session_row(db_session, t1.id, day=date(2026, 3, 4), status="cancelled")

    assert [r.id for r in await repo.list_sessions(therapist_id=t1.id)] == [a.id, c.id]
    assert [r.id for r in await repo.list_sessions(student_id=student)] == [a.id]
    assert [r.id for r in await repo.list_sessions(status="cancelled")] == [c.id]
    assert [r.id for r in await repo.list_sessions(date_from=date(2026, 3, 3))] == [b.id, c.id]
    assert [r.id for r in await repo.list_sessions(offset=1, limit=1)] == [b.id]
    assert [r.id for r in await repo.list_active_in_range(MONDAY, date(2026, 3, 6))] == [a.id, b.id]
    assert {r.id for r in await repo.get_many([a.id, c.id])} == {a.id, c.id}
    assert await repo.get_many([]) == []


async def test_create_from_domain_round_trip(db_session: AsyncSession):
    t = await _therapist(db_session)
    domain = ScheduledSession(
        session_number="S-001",
        therapist_id=str(t.id),
        student_id=str(uuid.uuid4()),
        scheduled_date=MONDAY,
        start_time=time(9, 0),
        end_time=time(9, 45),
        duration_minutes=45,
        priority=PriorityLevel.HIGH,
        equipment_ids=["mat"],
        generation_algorithm="greedy_with_local_search",
    )

    rows = await TherapySessionRepository(db_session).create_from_domain([domain])

    assert rows[0].id == uuid.UUID(domain.id)
    back = session_to_domain(rows[0])
    assert back.priority == PriorityLevel.HIGH
    assert back.status == SessionStatus.SCHEDULED
    assert back.equipment_ids == ["mat"]
    assert session_from_domain(back)["therapist_id"] == t.id


async def test_snapshot_and_restore(db_session: AsyncSession):
    t1 = await _therapist(db_session)
    t2 = await _therapist(db_session, last_name="Okafor")
    row = await _session_row(db_session, t1.id, notes="first visit")
    snap = snapshot_session(row)

    assert snap["scheduled_date"] == "2026-03-02"
    assert snap["therapist_id"] == str(t1.id)

    row.scheduled_date = date(2026, 3, 9)
    row.therapist_id = t2.id
    row.status = "cancelled"
    row.notes = "moved"
    row.reschedule_count = 2
    restore_session(row, snap)

    assert row.scheduled_date == MONDAY
    assert row.therapist_id == t1.id
    assert row.status == "scheduled"
    assert row.notes == "first visit"
    assert row.reschedule_count == 0


# --- Availability ---

async def test_availability_replace(db_session: AsyncSession):
    repo = AvailabilityRepository(db_session)
    t = await _therapist(db_session)
    other = await _therapist(db_session, last_name="Okafor")
    for dow in (2, 0):
        await repo.create(therapist_id=t.id, day_of_week=dow, start_time=time(9, 0), end_time=time(17, 0))
    await repo.create(therapist_id=other.id, day_of_week=1, start_time=time(9, 0), end_time=time(12, 0))

    assert [a.day_of_week for a in await repo.get_by_therapist(t.id)] == [0, 2]

    await repo.replace_for_therapist(t.id, [
        {"specific_date": MONDAY, "day_of_week": None, "start_time": time(13, 0), "end_time": time(15, 0)},
    ])

    current = await repo.get_by_therapist(t.id)
    assert len(current) == 1
    assert current[0].specific_date == MONDAY
    assert len(await repo.list_all()) == 2
    assert len(await repo.list_all([other.id])) == 1


# --- Rules ---

async def test_rule_persistence(db_session: AsyncSession):
    repo = OptimizationRuleRepository(db_session)
    rule = OptimizationRule(
        name="Prefer mornings",
        priority=8,
        conditions=[OptimizationCondition(field="request.flexibility_score", value=50)],
        actions=[OptimizationAction(action_type=OptimizationActionType.BOOST_SCORE, score_impact=5)],
    )
    await repo.create(rule)
    await repo.create(OptimizationRule(name="Off", priority=2, is_active=False))

    rows = await repo.list()
    assert [r.name for r in rows] == ["Prefer mornings", "Off"]
    assert [r.name for r in await repo.list(active_only=True)] == ["Prefer mornings"]

    back = rule_to_domain(rows[0])
    assert back.id == rule.id
    assert back.conditions[0].field == "request.flexibility_score"
    assert back.actions[0].action_type == OptimizationActionType.BOOST_SCORE


# --- Operation logs ---

async def test_bulk_log_lookup(db_session: AsyncSession):
    repo = BulkOperationLogRepository(db_session)
    await repo.create(operation_id="bulk_1", request_id="req-1", operation_type="cancel", total_sessions=3)

    by_op = await repo.get_by_operation_id("bulk_1")
    assert by_op is not None
    assert by_op.status == "pending"
    assert (await repo.get_by_request_id("req-1")).operation_id == "bulk_1"
    assert await repo.get_by_operation_id("bulk_2") is None


async def test_freeze_history_periods(db_session: AsyncSession):
    repo = FreezeHistoryRepository(db_session)
    sub = await SubscriptionRepository(db_session).create(
        student_id=uuid.uuid4(), start_date=MONDAY, end_date=date(2026, 6, 30)
    )
    for n, (start, end) in enumerate([(date(2026, 4, 6), date(2026, 4, 10)), (date(2026, 3, 9), date(2026, 3, 13))]):
        await repo.create(
            operation_id=f"freeze_{n}",
            subscription_id=sub.id,
            freeze_start_date=start,
            freeze_end_date=end,
            freeze_days=5,
            original_end_date=date(2026, 6, 30),
            new_end_date=date(2026, 7, 5),
        )

    periods = await repo.list_periods(sub.id)
    assert [p.freeze_start_date for p in periods] == [date(2026, 3, 9), date(2026, 4, 6)]
    assert all(p.status == "active" for p in periods)
    assert (await repo.get_by_operation_id("freeze_1")).freeze_days == 5
    assert await repo.get_by_request_id("missing") is None
