"""CRUD repositories for the scheduling schema."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from therapy_scheduler.core.models import (
    BulkOperationLog,
    OptimizationRuleDB,
    StudentSubscription,
    SubscriptionFreezeHistory,
    Therapist,
    TherapistAvailabilityDB,
    TherapySession,
)
from therapy_scheduler.scheduling.models import (
    FreezePeriod,
    INACTIVE_STATUSES,
    OptimizationAction,
    OptimizationCondition,
    OptimizationRule,
    ScheduledSession,
    SubscriptionSnapshot,
    TherapistAvailability,
)

_INACTIVE = [s.value for s in INACTIVE_STATUSES]

# Session fields captured before a bulk or freeze change and restored on rollback.
SNAPSHOT_FIELDS = (
    "scheduled_date",
    "start_time",
    "end_time",
    "therapist_id",
    "room_id",
    "status",
    "notes",
    "reschedule_count",
    "reschedule_reason",
)


def as_uuid(value: Any) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------

def session_to_domain(row: TherapySession) -> ScheduledSession:
    return ScheduledSession(
        id=str(row.id),
        session_number=row.session_number,
        student_subscription_id=_str(row.student_subscription_id),
        student_id=_str(row.student_id),
        therapist_id=str(row.therapist_id),
        scheduled_date=row.scheduled_date,
        start_time=row.start_time,
        end_time=row.end_time,
        duration_minutes=row.duration_minutes,
        category=row.category,
        priority=row.priority,
        status=row.status,
        room_id=row.room_id,
        equipment_ids=list(row.equipment_ids or []),
        optimization_score=row.optimization_score or 0.0,
        reschedule_count=row.reschedule_count or 0,
        original_session_id=_str(row.original_session_id),
        reschedule_reason=row.reschedule_reason,
        notes=row.notes,
        generation_algorithm=row.generation_algorithm,
    )


def session_from_domain(session: ScheduledSession) -> dict[str, Any]:
    """Column values for a new ``TherapySession`` row."""
    return {
        "id": as_uuid(session.id),
        "session_number": session.session_number,
        "student_subscription_id": as_uuid(session.student_subscription_id),
        "student_id": as_uuid(session.student_id),
        "therapist_id": as_uuid(session.therapist_id),
        "scheduled_date": session.scheduled_date,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "duration_minutes": session.duration_minutes,
        "category": session.category.value,
        "priority": int(session.priority),
        "status": session.status.value,
        "room_id": session.room_id,
        "equipment_ids": list(session.equipment_ids),
        "optimization_score": session.optimization_score,
        "reschedule_count": session.reschedule_count,
        "original_session_id": as_uuid(session.original_session_id),
        "reschedule_reason": session.reschedule_reason,
        "notes": session.notes,
        "generation_algorithm": session.generation_algorithm,
    }


def snapshot_session(row: TherapySession) -> dict[str, Any]:
    """JSON-safe copy of the fields a rollback restores."""
    snap: dict[str, Any] = {"id": str(row.id)}
    for name in SNAPSHOT_FIELDS:
        value = getattr(row, name)
        if isinstance(value, (date, time)):
            value = value.isoformat()
        elif isinstance(value, uuid.UUID):
            value = str(value)
        snap[name] = value
    return snap


def restore_session(row: TherapySession, snap: dict[str, Any]) -> None:
    row.scheduled_date = date.fromisoformat(snap["scheduled_date"])
    row.start_time = time.fromisoformat(snap["start_time"])
    row.end_time = time.fromisoformat(snap["end_time"])
    row.therapist_id = as_uuid(snap["therapist_id"])
    row.room_id = snap.get("room_id")
    row.status = snap["status"]
    row.notes = snap.get("notes")
    row.reschedule_count = snap.get("reschedule_count") or 0
    row.reschedule_reason = snap.get("reschedule_reason")
    row.updated_at = datetime.now(timezone.utc)


def availability_to_domain(row: TherapistAvailabilityDB) -> TherapistAvailability:
    return TherapistAvailability(
        id=str(row.id),
        therapist_id=str(row.therapist_id),
        day_of_week=row.day_of_week,
        specific_date=row.specific_date,
        start_time=row.start_time,
        end_time=row.end_time,
        is_available=row.is_available,
        is_time_off=row.is_time_off,
        max_sessions_per_slot=row.max_sessions_per_slot,
    )


def rule_to_domain(row: OptimizationRuleDB) -> OptimizationRule:
    return OptimizationRule(
        id=str(row.id),
        name=row.name,
        description=row.description,
        rule_type=row.rule_type,
        priority=row.priority,
        weight=row.weight,
        conditions=[OptimizationCondition.model_validate(c) for c in row.conditions or []],
        actions=[OptimizationAction.model_validate(a) for a in row.actions or []],
        is_active=row.is_active,
    )


def subscription_to_snapshot(row: StudentSubscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=str(row.id),
        student_id=_str(row.student_id),
        status=row.status,
        start_date=row.start_date,
        end_date=row.end_date,
        total_freeze_days_allowed=row.total_freeze_days_allowed,
        freeze_days_used=row.freeze_days_used,
        exclude_weekends=row.exclude_weekends,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class TherapistRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Therapist:
        therapist = Therapist(**kwargs)
        self.session.add(therapist)
        await self.session.flush()
        return therapist

    async def get_by_id(self, therapist_id: uuid.UUID) -> Optional[Therapist]:
        return await self.session.get(Therapist, therapist_id)

    async def list(self, active_only: bool = True) -> Sequence[Therapist]:
        stmt = select(Therapist)
        if active_only:
            stmt = stmt.where(Therapist.active.is_(True))
        stmt = stmt.order_by(Therapist.last_name, Therapist.first_name)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class SubscriptionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> StudentSubscription:
        sub = StudentSubscription(**kwargs)
        self.session.add(sub)
        await self.session.flush()
        return sub

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[StudentSubscription]:
        return await self.session.get(StudentSubscription, subscription_id)

    async def update(self, subscription_id: uuid.UUID, **kwargs) -> Optional[StudentSubscription]:
        sub = await self.get_by_id(subscription_id)
        if not sub:
            return None
        for k, v in kwargs.items():
            if v is not None:
                setattr(sub, k, v)
        sub.updated_at = datetime.now(timezone.utc)
        await self.session.flush()
        return sub


class TherapySessionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> TherapySession:
        row = TherapySession(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def create_from_domain(self, sessions: Iterable[ScheduledSession]) -> list[TherapySession]:
        rows = [TherapySession(**session_from_domain(s)) for s in sessions]
        self.session.add_all(rows)
        await self.session.flush()
        return rows

    async def get_by_id(self, session_id: uuid.UUID) -> Optional[TherapySession]:
        return await self.session.get(TherapySession, session_id)

    async def get_many(self, session_ids: Sequence[uuid.UUID]) -> Sequence[TherapySession]:
        if not session_ids:
            return []
        stmt = select(TherapySession).where(TherapySession.id.in_(list(session_ids)))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_sessions(
        self,
        therapist_id: Optional[uuid.UUID] = None,
        student_id: Optional[uuid.UUID] = None,
        subscription_id: Optional[uuid.UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        status: Optional[str] = None,
        active_only: bool = False,
        offset: int = 0,
        limit: Optional[int] = 200,
    ) -> Sequence[TherapySession]:
        stmt = select(TherapySession)
        if therapist_id is not None:
            stmt = stmt.where(TherapySession.therapist_id == therapist_id)
        if student_id is not None:
            stmt = stmt.where(TherapySession.student_id == student_id)
        if subscription_id is not None:
            stmt = stmt.where(TherapySession.student_subscription_id == subscription_id)
        if date_from is not None:
            stmt = stmt.where(TherapySession.scheduled_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(TherapySession.scheduled_date <= date_to)
        if status is not None:
            stmt = stmt.where(TherapySession.status == status)
        if active_only:
            stmt = stmt.where(TherapySession.status.not_in(_INACTIVE))
        stmt = stmt.order_by(
            TherapySession.scheduled_date, TherapySession.start_time, TherapySession.id
        ).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_active_in_range(self, date_from: date, date_to: date) -> Sequence[TherapySession]:
        """Every session occupying the calendar between the two dates."""
        return await self.list_sessions(
            date_from=date_from, date_to=date_to, active_only=True, limit=None
        )


class AvailabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> TherapistAvailabilityDB:
        row = TherapistAvailabilityDB(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_by_therapist(self, therapist_id: uuid.UUID) -> Sequence[TherapistAvailabilityDB]:
        stmt = (
            select(TherapistAvailabilityDB)
            .where(TherapistAvailabilityDB.therapist_id == therapist_id)
            .order_by(TherapistAvailabilityDB.day_of_week, TherapistAvailabilityDB.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_all(self, therapist_ids: Optional[Sequence[uuid.UUID]] = None) -> Sequence[TherapistAvailabilityDB]:
        stmt = select(TherapistAvailabilityDB)
        if therapist_ids is not None:
            stmt = stmt.where(TherapistAvailabilityDB.therapist_id.in_(list(therapist_ids)))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def replace_for_therapist(
        self, therapist_id: uuid.UUID, entries: Sequence[dict[str, Any]]
    ) -> Sequence[TherapistAvailabilityDB]:
        """Replace a therapist's availability with *entries* in one flush."""
        await self.session.execute(
            delete(TherapistAvailabilityDB).where(TherapistAvailabilityDB.therapist_id == therapist_id)
        )
        rows = [TherapistAvailabilityDB(therapist_id=therapist_id, **e) for e in entries]
        self.session.add_all(rows)
        await self.session.flush()
        return rows


class OptimizationRuleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, rule: OptimizationRule) -> OptimizationRuleDB:
        row = OptimizationRuleDB(
            id=as_uuid(rule.id),
            name=rule.name,
            description=rule.description,
            rule_type=rule.rule_type,
            priority=rule.priority,
            weight=rule.weight,
            conditions=[c.model_dump(mode="json") for c in rule.conditions],
            actions=[a.model_dump(mode="json") for a in rule.actions],
            is_active=rule.is_active,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list(self, active_only: bool = False) -> Sequence[OptimizationRuleDB]:
        stmt = select(OptimizationRuleDB)
        if active_only:
            stmt = stmt.where(OptimizationRuleDB.is_active.is_(True))
        stmt = stmt.order_by(OptimizationRuleDB.priority.desc(), OptimizationRuleDB.name)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class BulkOperationLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> BulkOperationLog:
        log = BulkOperationLog(**kwargs)
        self.session.add(log)
        await self.session.flush()
        return log

    async def get_by_operation_id(self, operation_id: str) -> Optional[BulkOperationLog]:
        stmt = select(BulkOperationLog).where(BulkOperationLog.operation_id == operation_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_request_id(self, request_id: str) -> Optional[BulkOperationLog]:
        stmt = select(BulkOperationLog).where(BulkOperationLog.request_id == request_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class FreezeHistoryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> SubscriptionFreezeHistory:
        entry = SubscriptionFreezeHistory(**kwargs)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_operation_id(self, operation_id: str) -> Optional[SubscriptionFreezeHistory]:
        stmt = select(SubscriptionFreezeHistory).where(SubscriptionFreezeHistory.operation_id == operation_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_request_id(self, request_id: str) -> Optional[SubscriptionFreezeHistory]:
        stmt = select(SubscriptionFreezeHistory).where(SubscriptionFreezeHistory.request_id == request_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_subscription(self, subscription_id: uuid.UUID) -> Sequence[SubscriptionFreezeHistory]:
        stmt = (
            select(SubscriptionFreezeHistory)
            .where(SubscriptionFreezeHistory.subscription_id == subscription_id)
            .order_by(SubscriptionFreezeHistory.freeze_start_date)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_periods(self, subscription_id: uuid.UUID) -> list[FreezePeriod]:
        return [
            FreezePeriod(
                freeze_start_date=h.freeze_start_date,
                freeze_end_date=h.freeze_end_date,
                status=h.status,
            )
            for h in await self.list_by_subscription(subscription_id)
        ]
