"""Subscription freeze: timeline extension, validation and session moves.

The pure functions (:func:`calculate_new_end_date`, :func:`validate_freeze_request`,
:func:`plan_freeze_reschedule`) hold the rules; :class:`ReschedulingEngine`
loads the calendar, applies a plan inside one SAVEPOINT and records a freeze
history row carrying the rollback snapshot.
"""

import logging
import math
import uuid
from datetime import date, timedelta
from time import perf_counter
from typing import Iterable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from therapy_scheduler.config import Settings, get_settings
from therapy_scheduler.core.repository import (
    AvailabilityRepository,
    FreezeHistoryRepository,
    SubscriptionRepository,
    TherapySessionRepository,
    as_uuid,
    availability_to_domain,
    restore_session,
    session_to_domain,
    snapshot_session,
    subscription_to_snapshot,
)
from therapy_scheduler.observability.logger import ObservabilityLogger
from therapy_scheduler.scheduling.bulk import OperationNotFoundError, RollbackRefusedError
from therapy_scheduler.scheduling.conflicts import ConflictDetector
from therapy_scheduler.scheduling.models import (
    ConflictSeverity,
    ConflictType,
    FreezePeriod,
    FreezeValidationResult,
    ReschedulingRequest,
    ReschedulingResult,
    RollbackInfo,
    RollbackResult,
    ScheduleConflict,
    ScheduledSession,
    SubscriptionSnapshot,
    TherapistAvailability,
    TimelineAdjustment,
)
from therapy_scheduler.scheduling.timeslots import daterange

logger = logging.getLogger(__name__)

CALENDAR_DAYS = "calendar_days"
BUSINESS_DAYS_ONLY = "business_days_only"
BUSINESS_DAYS_HOLIDAYS_EXCLUDED = "business_days_holidays_excluded"

HIGH_UTILIZATION_PERCENT = 80


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

def calculate_new_end_date(
    subscription_id: str,
    start_date: date,
    end_date: date,
    freeze_days: int,
    exclude_weekends: bool = False,
    holidays: Iterable[date] = (),
    weekend_days: Sequence[int] = (5, 6),
) -> TimelineAdjustment:
    """Push the program end date back by the frozen time.

    Calendar programs move by ``freeze_days``. Programs that skip weekends
    stretch the freeze by the week / working-week ratio, and every holiday
    falling in the extension adds one more day.
    """
    holidays = list(holidays)
    adjustment = freeze_days
    if exclude_weekends:
        working_days = max(7 - len(set(weekend_days)), 1)
        adjustment = math.ceil(freeze_days * 7 / working_days)
    if holidays:
        extended = end_date + timedelta(days=adjustment)
        adjustment += sum(1 for h in holidays if end_date <= h <= extended)

    if holidays:
        method = BUSINESS_DAYS_HOLIDAYS_EXCLUDED
    elif exclude_weekends:
        method = BUSINESS_DAYS_ONLY
    else:
        method = CALENDAR_DAYS

    total_program_days = (end_date - start_date).days
    extension = adjustment / total_program_days * 100 if total_program_days > 0 else 0.0

    return TimelineAdjustment(
        subscription_id=subscription_id,
        original_end_date=end_date,
        new_end_date=end_date + timedelta(days=adjustment),
        freeze_days=freeze_days,
        adjustment_days=adjustment,
        extension_percentage=round(extension, 2),
        calculation_method=method,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_freeze_request(
    request: ReschedulingRequest,
    subscription: SubscriptionSnapshot,
    previous_freezes: Sequence[FreezePeriod] = (),
    today: Optional[date] = None,
    affected_sessions: int = 0,
    settings: Optional[Settings] = None,
) -> FreezeValidationResult:
    settings = settings or get_settings()
    today = today or date.today()
    errors: list[str] = []
    warnings: list[str] = []
    violations: list[str] = []

    start, end = request.freeze_start_date, request.freeze_end_date
    if end < start:
        errors.append("Freeze end date must be on or after the start date")

    if not settings.freeze_min_days <= request.freeze_days <= settings.freeze_max_days:
        errors.append(
            f"Freeze duration must be between {settings.freeze_min_days} "
            f"and {settings.freeze_max_days} days"
        )
    elif end >= start and request.freeze_days != (end - start).days + 1:
        warnings.append("freeze_days does not match the length of the freeze window")

    notice = (start - today).days
    if notice < 0:
        errors.append("Freeze start date cannot be in the past")
    elif notice < settings.freeze_advance_notice_days:
        warnings.append(
            f"Freeze requests typically require {settings.freeze_advance_notice_days} day(s) advance notice"
        )

    if end > subscription.end_date:
        errors.append("Freeze end date cannot be beyond the subscription end date")
    if subscription.status != "active":
        errors.append(f"Only active subscriptions can be frozen (current status: {subscription.status})")
    if subscription.end_date < today:
        errors.append("Cannot freeze an expired subscription")

    remaining = subscription.total_freeze_days_allowed - subscription.freeze_days_used
    if request.freeze_days > remaining:
        errors.append(f"Insufficient freeze days. Available: {remaining}, Requested: {request.freeze_days}")
    elif subscription.total_freeze_days_allowed > 0:
        used = (subscription.freeze_days_used + request.freeze_days) / subscription.total_freeze_days_allowed * 100
        if used > HIGH_UTILIZATION_PERCENT:
            warnings.append(f"This request will use {round(used)}% of the freeze allowance")

    active_freezes = [f for f in previous_freezes if f.status == "active"]
    if any(f.freeze_start_date <= end and start <= f.freeze_end_date for f in active_freezes):
        violations.append("no_overlapping_freezes")
        errors.append("Overlapping freeze periods detected")
    if len(previous_freezes) >= settings.frequent_freeze_threshold:
        violations.append("frequent_freeze_warning")
        warnings.append("Multiple freeze requests recorded for this subscription")
    if affected_sessions:
        warnings.append(f"{affected_sessions} scheduled sessions will need rescheduling")

    return FreezeValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        business_rule_violations=violations,
        affected_sessions=affected_sessions,
        freeze_days_remaining=max(remaining, 0),
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def plan_freeze_reschedule(
    sessions: Sequence[ScheduledSession],
    freeze_end_date: date,
    new_end_date: date,
    existing_sessions: Sequence[ScheduledSession],
    availability: Sequence[TherapistAvailability],
    detector: ConflictDetector,
    reason: Optional[str] = None,
) -> tuple[list[ScheduledSession], list[ScheduleConflict]]:
    """Move each frozen session into the days after the freeze.

    Sessions first try their own weekday and start time, then any free slot
    of the same therapist. Sessions with nowhere to go stay put and come back
    as ``no_slot_available`` conflicts.
    """
    pool = list(existing_sessions)
    window = list(daterange(freeze_end_date + timedelta(days=1), new_end_date))
    placed: dict[str, ScheduledSession] = {}

    for session in sessions:
        for day in window:
            if day.weekday() != session.scheduled_date.weekday():
                continue
            candidate = session.model_copy(update={"scheduled_date": day})
            if detector.is_slot_clear(candidate, pool, availability):
                placed[session.id] = candidate
                pool.append(candidate)
                break

    for session in sessions:
        if session.id in placed:
            continue
        for day in window:
            candidate = detector.find_free_slot(session, day, pool, availability)
            if candidate is not None:
                placed[session.id] = candidate
                pool.append(candidate)
                break

    moved: list[ScheduledSession] = []
    conflicts: list[ScheduleConflict] = []
    for session in sessions:
        candidate = placed.get(session.id)
        if candidate is None:
            conflicts.append(ScheduleConflict(
                conflict_type=ConflictType.NO_SLOT_AVAILABLE,
                severity=ConflictSeverity.HIGH,
                session_id=session.id,
                therapist_id=session.therapist_id,
                student_id=session.student_id,
                conflict_date=session.scheduled_date,
                start_time=session.start_time,
                end_time=session.end_time,
                description=f"No available slot between {window[0] if window else new_end_date} and {new_end_date}",
            ))
            continue
        moved.append(candidate.model_copy(update={
            "reschedule_count": session.reschedule_count + 1,
            "reschedule_reason": reason or "Subscription freeze",
        }))
    return moved, conflicts


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ReschedulingEngine:
    """Applies a subscription freeze to the stored calendar."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        detector: Optional[ConflictDetector] = None,
        observability: Optional[ObservabilityLogger] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector.from_settings(self.settings)
        self.observability = observability
        self.sessions = TherapySessionRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.availability = AvailabilityRepository(db)
        self.history = FreezeHistoryRepository(db)

    async def validate(self, request: ReschedulingRequest, today: Optional[date] = None) -> FreezeValidationResult:
        """Validate *request* against the stored subscription and freeze history."""
        try:
            sub_id = as_uuid(request.subscription_id)
        except ValueError:
            return FreezeValidationResult(is_valid=False, errors=["Invalid subscription id"])
        sub = await self.subscriptions.get_by_id(sub_id)
        if sub is None:
            return FreezeValidationResult(is_valid=False, errors=[f"Subscription {request.subscription_id} not found"])

        affected = await self.sessions.list_sessions(
            subscription_id=sub.id,
            date_from=request.freeze_start_date,
            date_to=request.freeze_end_date,
            active_only=True,
            limit=None,
        )
        return validate_freeze_request(
            request,
            subscription_to_snapshot(sub),
            await self.history.list_periods(sub.id),
            today=today,
            affected_sessions=len(affected),
            settings=self.settings,
        )

    async def reschedule_sessions_for_freeze(self, request: ReschedulingRequest) -> ReschedulingResult:
        if self.observability is None:
            return await self._reschedule(request)

        with self.observability.engine_run(
            "freeze_reschedule",
            subject_id=request.subscription_id,
            input_count=request.freeze_days,
        ) as event:
            result = await self._reschedule(request)
            event.output_count = result.sessions_rescheduled
            event.conflict_count = len(result.conflicts_detected)
            event.success = result.success
            event.metadata = {"operation_id": result.operation_id, "replayed": result.replayed}
            return result

    async def _reschedule(self, request: ReschedulingRequest) -> ReschedulingResult:
        started = perf_counter()

        def elapsed() -> float:
            return (perf_counter() - started) * 1000

        if request.request_id:
            previous = await self.history.get_by_request_id(request.request_id)
            if previous is not None:
                logger.info("Replaying freeze request %s (operation %s)", request.request_id, previous.operation_id)
                return ReschedulingResult(
                    success=True,
                    operation_id=previous.operation_id,
                    sessions_rescheduled=previous.sessions_rescheduled,
                    conflicts_detected=[ScheduleConflict.model_validate(c) for c in previous.conflicts or []],
                    new_end_date=previous.new_end_date,
                    execution_time_ms=elapsed(),
                    rollback_info=RollbackInfo(
                        operation_id=previous.operation_id,
                        original_end_date=previous.original_end_date,
                        session_snapshots=previous.rollback_data or [],
                        rollback_available=not previous.rollback_executed,
                    ),
                    replayed=True,
                )

        try:
            sub_id = as_uuid(request.subscription_id)
        except ValueError:
            return ReschedulingResult(success=False, errors=["Invalid subscription id"], execution_time_ms=elapsed())
        sub = await self.subscriptions.get_by_id(sub_id)
        if sub is None:
            return ReschedulingResult(
                success=False,
                errors=[f"Subscription {request.subscription_id} not found"],
                execution_time_ms=elapsed(),
            )

        adjustment = calculate_new_end_date(
            str(sub.id),
            sub.start_date,
            sub.end_date,
            request.freeze_days,
            exclude_weekends=sub.exclude_weekends,
            holidays=request.holidays,
            weekend_days=self.settings.weekend_days,
        )

        affected_rows = await self.sessions.list_sessions(
            subscription_id=sub.id,
            date_from=request.freeze_start_date,
            date_to=request.freeze_end_date,
            active_only=True,
            limit=None,
        )
        affected_ids = {r.id for r in affected_rows}
        window_start = request.freeze_end_date + timedelta(days=1)
        existing = [
            session_to_domain(r)
            for r in await self.sessions.list_active_in_range(window_start, adjustment.new_end_date)
            if r.id not in affected_ids
        ]
        availability = [
            availability_to_domain(a)
            for a in await self.availability.list_all({r.therapist_id for r in affected_rows})
        ]

        moved, conflicts = plan_freeze_reschedule(
            [session_to_domain(r) for r in affected_rows],
            request.freeze_end_date,
            adjustment.new_end_date,
            existing,
            availability,
            self.detector,
            reason=request.reason,
        )

        snapshots = [snapshot_session(r) for r in affected_rows]
        operation_id = f"freeze_{uuid.uuid4().hex[:16]}"
        rows = {str(r.id): r for r in affected_rows}
        try:
            async with self.db.begin_nested():
                for session in moved:
                    row = rows[session.id]
                    row.scheduled_date = session.scheduled_date
                    row.start_time = session.start_time
                    row.end_time = session.end_time
                    row.therapist_id = as_uuid(session.therapist_id)
                    row.reschedule_count = session.reschedule_count
                    row.reschedule_reason = session.reschedule_reason
                sub.end_date = adjustment.new_end_date
                sub.freeze_days_used = (sub.freeze_days_used or 0) + request.freeze_days
                await self.history.create(
                    operation_id=operation_id,
                    request_id=request.request_id,
                    subscription_id=sub.id,
                    freeze_start_date=request.freeze_start_date,
                    freeze_end_date=request.freeze_end_date,
                    freeze_days=request.freeze_days,
                    reason=request.reason,
                    status="active",
                    original_end_date=adjustment.original_end_date,
                    new_end_date=adjustment.new_end_date,
                    sessions_rescheduled=len(moved),
                    conflicts=[c.model_dump(mode="json") for c in conflicts],
                    rollback_data=snapshots,
                )
        except SQLAlchemyError as e:
            logger.error("Freeze rescheduling for subscription %s rolled back: %s", request.subscription_id, e)
            return ReschedulingResult(success=False, errors=[str(e)], execution_time_ms=elapsed())

        warnings: list[str] = []
        if not affected_rows:
            warnings.append("No sessions scheduled inside the freeze window")
        if conflicts:
            warnings.append(f"{len(conflicts)} sessions could not be rescheduled")

        logger.info(
            "Freeze %s: %d/%d sessions moved, end date %s -> %s",
            operation_id, len(moved), len(affected_rows),
            adjustment.original_end_date, adjustment.new_end_date,
        )
        return ReschedulingResult(
            success=True,
            operation_id=operation_id,
            sessions_rescheduled=len(moved),
            conflicts_detected=conflicts,
            execution_time_ms=elapsed(),
            new_end_date=adjustment.new_end_date,
            rollback_info=RollbackInfo(
                operation_id=operation_id,
                original_end_date=adjustment.original_end_date,
                session_snapshots=snapshots,
            ),
            rescheduled_sessions=moved,
            warnings=warnings,
        )

    async def rollback_freeze(self, operation_id: str) -> RollbackResult:
        """Undo a freeze: sessions, end date and used freeze days. Allowed once."""
        entry = await self.history.get_by_operation_id(operation_id)
        if entry is None:
            raise OperationNotFoundError(operation_id)
        if entry.rollback_executed:
            raise RollbackRefusedError(f"Freeze {operation_id} has already been rolled back")

        snapshots = {s["id"]: s for s in entry.rollback_data or []}
        async with self.db.begin_nested():
            rows = await self.sessions.get_many([as_uuid(i) for i in snapshots])
            for row in rows:
                restore_session(row, snapshots[str(row.id)])
            sub = await self.subscriptions.get_by_id(entry.subscription_id)
            if sub is not None:
                sub.end_date = entry.original_end_date
                sub.freeze_days_used = max((sub.freeze_days_used or 0) - entry.freeze_days, 0)
            entry.status = "rolled_back"
            entry.rollback_executed = True

        logger.info("Rolled back freeze %s (%d sessions)", operation_id, len(rows))
        if self.observability is not None:
            self.observability.log_rollback(operation_id, "freeze", len(rows))
        return RollbackResult(
            operation_id=operation_id,
            success=True,
            restored_count=len(rows),
            message=f"Restored {len(rows)} sessions and end date {entry.original_end_date}",
        )

