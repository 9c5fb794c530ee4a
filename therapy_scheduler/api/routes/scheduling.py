"""Scheduling API endpoints: generation, conflicts, rules, bulk changes and freezes."""

import logging
import uuid
from datetime import date, time, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from therapy_scheduler.api.dependencies import get_observability
from therapy_scheduler.core.database import get_db
from therapy_scheduler.core.repository import (
    AvailabilityRepository,
    FreezeHistoryRepository,
    OptimizationRuleRepository,
    TherapistRepository,
    TherapySessionRepository,
    availability_to_domain,
    rule_to_domain,
    session_to_domain,
)
from therapy_scheduler.observability.logger import ObservabilityLogger
from therapy_scheduler.scheduling.bulk import (
    BulkReschedulingEngine,
    OperationNotFoundError,
    RollbackRefusedError,
)
from therapy_scheduler.scheduling.conflicts import ConflictDetector
from therapy_scheduler.scheduling.freeze import ReschedulingEngine
from therapy_scheduler.scheduling.generator import SchedulingEngine
from therapy_scheduler.scheduling.models import (
    BatchConflictOptions,
    BulkReschedulingRequest,
    BulkReschedulingResult,
    FreezeValidationResult,
    OperationProgress,
    OptimizationRule,
    ReschedulingRequest,
    ReschedulingResult,
    RollbackResult,
    RuleExecutionResult,
    RuleValidationResult,
    ScheduleConflict,
    ScheduledSession,
    SchedulingRequest,
    SchedulingResult,
    SchedulingSuggestion,
    TherapistAvailability,
)
from therapy_scheduler.scheduling.rules import OptimizationRuleEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling")

_rule_engine = OptimizationRuleEngine()

SUGGESTION_SEARCH_DAYS = 7


# ---------------------------------------------------------------------------
# Pydantic request/response schemas
# ---------------------------------------------------------------------------

class GenerateRequest(BaseModel):
    request: SchedulingRequest
    persist: bool = False
    use_stored_rules: bool = True
    rules: list[OptimizationRule] = []


class GenerateResponse(BaseModel):
    result: SchedulingResult
    persisted_session_ids: list[str] = []


class BatchConflictRequest(BaseModel):
    sessions: list[ScheduledSession]
    options: BatchConflictOptions = Field(default_factory=BatchConflictOptions)
    include_stored_sessions: bool = True


class BatchConflictResponse(BaseModel):
    conflicts: dict[str, list[ScheduleConflict]]
    total_conflicts: int


class OptimizeRequest(BaseModel):
    sessions: list[ScheduledSession]
    request: Optional[SchedulingRequest] = None
    rules: Optional[list[OptimizationRule]] = None
    context: dict[str, Any] = {}


class AvailabilityEntryIn(BaseModel):
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    specific_date: Optional[date] = None
    start_time: time
    end_time: time
    is_available: bool = True
    is_time_off: bool = False
    max_sessions_per_slot: int = Field(1, ge=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_uuid(value: str, name: str = "ID") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")


async def _stored_sessions(db: AsyncSession, date_from: date, date_to: date) -> list[ScheduledSession]:
    rows = await TherapySessionRepository(db).list_active_in_range(date_from, date_to)
    return [session_to_domain(r) for r in rows]


async def _stored_availability(
    db: AsyncSession, therapist_ids: Optional[list[str]] = None
) -> list[TherapistAvailability]:
    ids = [_parse_uuid(t, "therapist_id") for t in therapist_ids] if therapist_ids is not None else None
    rows = await AvailabilityRepository(db).list_all(ids)
    return [availability_to_domain(r) for r in rows]


async def _session_or_404(db: AsyncSession, session_id: str) -> ScheduledSession:
    sid = _parse_uuid(session_id, "session_id")
    row = await TherapySessionRepository(db).get_by_id(sid)
    if not row:
        raise HTTPException(status_code=404, detail="Session not found")
    return session_to_domain(row)


async def _active_rules(db: AsyncSession) -> list[OptimizationRule]:
    return [rule_to_domain(r) for r in await OptimizationRuleRepository(db).list(active_only=True)]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

@router.post("/generate", response_model=GenerateResponse)
async def generate_schedule(
    body: GenerateRequest,
    db: AsyncSession = Depends(get_db),
    observability: Optional[ObservabilityLogger] = Depends(get_observability),
) -> GenerateResponse:
    """Generate a session program against the stored calendar."""
    req = body.request
    if body.persist:
        _parse_uuid(req.student_subscription_id, "student_subscription_id")

    therapist_ids = [req.preferred_therapist_id] if req.preferred_therapist_id else None
    availability = await _stored_availability(db, therapist_ids)
    existing = await _stored_sessions(db, req.start_date, req.end_date)
    rules = list(body.rules)
    if body.use_stored_rules:
        rules.extend(await _active_rules(db))

    engine = SchedulingEngine(observability=observability)
    result = engine.generate_schedule(req, availability, existing, rules or None)

    persisted: list[str] = []
    if body.persist and result.generated_sessions:
        rows = await TherapySessionRepository(db).create_from_domain(result.generated_sessions)
        persisted = [str(r.id) for r in rows]
        logger.info("Persisted %d generated sessions for %s", len(rows), req.student_subscription_id)

    return GenerateResponse(result=result, persisted_session_ids=persisted)


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

@router.post("/conflicts/batch", response_model=BatchConflictResponse)
async def detect_batch_conflicts(
    body: BatchConflictRequest,
    db: AsyncSession = Depends(get_db),
) -> BatchConflictResponse:
    """Check a batch of sessions against each other and the stored calendar."""
    if not body.sessions:
        return BatchConflictResponse(conflicts={}, total_conflicts=0)

    existing: list[ScheduledSession] = []
    if body.include_stored_sessions:
        first = min(s.scheduled_date for s in body.sessions)
        last = max(s.scheduled_date for s in body.sessions)
        existing = await _stored_sessions(db, first, last)
    availability = await _stored_availability(db, sorted({s.therapist_id for s in body.sessions}))

    results = ConflictDetector.from_settings().detect_batch_conflicts(
        body.sessions, body.options, existing, availability
    )
    return BatchConflictResponse(
        conflicts=results,
        total_conflicts=sum(len(c) for c in results.values()),
    )


@router.get("/sessions/{session_id}/conflicts", response_model=list[ScheduleConflict])
async def get_session_conflicts(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[ScheduleConflict]:
    session = await _session_or_404(db, session_id)
    existing = await _stored_sessions(db, session.scheduled_date, session.scheduled_date)
    availability = await _stored_availability(db, [session.therapist_id])
    return ConflictDetector.from_settings().detect_conflicts_for_session(session, existing, availability)


@router.get("/sessions/{session_id}/suggestions", response_model=list[SchedulingSuggestion])
async def get_session_suggestions(
    session_id: str,
    max_suggestions: int = Query(5, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
) -> list[SchedulingSuggestion]:
    """Alternative placements for a session that currently has conflicts."""
    session = await _session_or_404(db, session_id)
    detector = ConflictDetector.from_settings()
    existing = await _stored_sessions(
        db, session.scheduled_date, session.scheduled_date + timedelta(days=SUGGESTION_SEARCH_DAYS)
    )
    availability = await _stored_availability(db)
    conflicts = detector.detect_conflicts_for_session(session, existing, availability)
    return detector.generate_resolution_suggestions(
        conflicts, session, existing, availability,
        max_suggestions=max_suggestions, search_days=SUGGESTION_SEARCH_DAYS,
    )


@router.get("/sessions", response_model=list[ScheduledSession])
async def list_sessions(
    therapist_id: Optional[str] = Query(None),
    student_id: Optional[str] = Query(None),
    subscription_id: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    status: Optional[str] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> list[ScheduledSession]:
    rows = await TherapySessionRepository(db).list_sessions(
        therapist_id=_parse_uuid(therapist_id, "therapist_id") if therapist_id else None,
        student_id=_parse_uuid(student_id, "student_id") if student_id else None,
        subscription_id=_parse_uuid(subscription_id, "subscription_id") if subscription_id else None,
        date_from=date_from,
        date_to=date_to,
        status=status,
        offset=offset,
        limit=limit,
    )
    return [session_to_domain(r) for r in rows]


# ---------------------------------------------------------------------------
# Optimization rules
# ---------------------------------------------------------------------------

@router.post("/optimize", response_model=RuleExecutionResult)
async def optimize_sessions(
    body: OptimizeRequest,
    db: AsyncSession = Depends(get_db),
) -> RuleExecutionResult:
    """Run optimization rules over sessions. Stored active rules apply when none are given."""
    rules = body.rules if body.rules is not None else await _active_rules(db)
    return _rule_engine.execute_rules(body.sessions, body.request, rules, body.context)


@router.get("/rules", response_model=list[OptimizationRule])
async def list_rules(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> list[OptimizationRule]:
    rows = await OptimizationRuleRepository(db).list(active_only=active_only)
    return [rule_to_domain(r) for r in rows]


@router.post("/rules", response_model=OptimizationRule, status_code=201)
async def create_rule(
    rule: OptimizationRule,
    db: AsyncSession = Depends(get_db),
) -> OptimizationRule:
    _parse_uuid(rule.id, "rule id")
    validation = OptimizationRuleEngine().validate_rule(rule)
    if not validation.is_valid:
        raise HTTPException(status_code=400, detail=validation.errors)
    row = await OptimizationRuleRepository(db).create(rule)
    return rule_to_domain(row)


@router.post("/rules/validate", response_model=RuleValidationResult)
async def validate_rule(rule: OptimizationRule) -> RuleValidationResult:
    return OptimizationRuleEngine().validate_rule(rule)


# ---------------------------------------------------------------------------
# Therapist availability
# ---------------------------------------------------------------------------

@router.get("/therapists/{therapist_id}/availability", response_model=list[TherapistAvailability])
async def get_therapist_availability(
    therapist_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[TherapistAvailability]:
    tid = _parse_uuid(therapist_id, "therapist_id")
    rows = await AvailabilityRepository(db).get_by_therapist(tid)
    return [availability_to_domain(r) for r in rows]


@router.put("/therapists/{therapist_id}/availability", response_model=list[TherapistAvailability])
async def set_therapist_availability(
    therapist_id: str,
    entries: list[AvailabilityEntryIn],
    db: AsyncSession = Depends(get_db),
) -> list[TherapistAvailability]:
    """Replace a therapist's availability with the given entries."""
    tid = _parse_uuid(therapist_id, "therapist_id")
    if not await TherapistRepository(db).get_by_id(tid):
        raise HTTPException(status_code=404, detail="Therapist not found")

    try:
        checked = [TherapistAvailability(therapist_id=therapist_id, **e.model_dump()) for e in entries]
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    rows = await AvailabilityRepository(db).replace_for_therapist(
        tid, [a.model_dump(exclude={"id", "therapist_id"}) for a in checked]
    )
    return [availability_to_domain(r) for r in rows]


# ---------------------------------------------------------------------------
# Bulk operations
# ---------------------------------------------------------------------------

@router.post("/bulk-reschedule", response_model=BulkReschedulingResult)
async def bulk_reschedule(
    body: BulkReschedulingRequest,
    db: AsyncSession = Depends(get_db),
    observability: Optional[ObservabilityLogger] = Depends(get_observability),
) -> BulkReschedulingResult:
    engine = BulkReschedulingEngine(db, observability=observability)
    errors = engine.validate_request(body)
    if errors:
        raise HTTPException(status_code=400, detail=errors)
    return await engine.execute(body)


@router.get("/operations/{operation_id}", response_model=OperationProgress)
async def get_operation(
    operation_id: str,
    db: AsyncSession = Depends(get_db),
) -> OperationProgress:
    try:
        return await BulkReschedulingEngine(db).get_status(operation_id)
    except OperationNotFoundError:
        raise HTTPException(status_code=404, detail="Operation not found")


@router.post("/operations/{operation_id}/rollback", response_model=RollbackResult)
async def rollback_operation(
    operation_id: str,
    db: AsyncSession = Depends(get_db),
    observability: Optional[ObservabilityLogger] = Depends(get_observability),
) -> RollbackResult:
    try:
        return await BulkReschedulingEngine(db, observability=observability).rollback(operation_id)
    except OperationNotFoundError:
        raise HTTPException(status_code=404, detail="Operation not found")
    except RollbackRefusedError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ---------------------------------------------------------------------------
# Subscription freeze
# ---------------------------------------------------------------------------

@router.post("/freeze/validate", response_model=FreezeValidationResult)
async def validate_freeze(
    body: ReschedulingRequest,
    db: AsyncSession = Depends(get_db),
) -> FreezeValidationResult:
    sid = _parse_uuid(body.subscription_id, "subscription_id")
    engine = ReschedulingEngine(db)
    if not await engine.subscriptions.get_by_id(sid):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return await engine.validate(body)


@router.post("/freeze/reschedule", response_model=ReschedulingResult)
async def freeze_reschedule(
    body: ReschedulingRequest,
    db: AsyncSession = Depends(get_db),
    observability: Optional[ObservabilityLogger] = Depends(get_observability),
) -> ReschedulingResult:
    """Freeze a subscription and move its sessions. Repeated request ids replay."""
    sid = _parse_uuid(body.subscription_id, "subscription_id")
    engine = ReschedulingEngine(db, observability=observability)

    replay = body.request_id and await FreezeHistoryRepository(db).get_by_request_id(body.request_id)
    if not replay:
        if not await engine.subscriptions.get_by_id(sid):
            raise HTTPException(status_code=404, detail="Subscription not found")
        validation = await engine.validate(body)
        if not validation.is_valid:
            raise HTTPException(status_code=400, detail=validation.errors)

    return await engine.reschedule_sessions_for_freeze(body)


@router.post("/freeze/{operation_id}/rollback", response_model=RollbackResult)
async def rollback_freeze(
    operation_id: str,
    db: AsyncSession = Depends(get_db),
    observability: Optional[ObservabilityLogger] = Depends(get_observability),
) -> RollbackResult:
    try:
        return await ReschedulingEngine(db, observability=observability).rollback_freeze(operation_id)
    except OperationNotFoundError:
        raise HTTPException(status_code=404, detail="Freeze operation not found")
    except RollbackRefusedError as e:
        raise HTTPException(status_code=409, detail=str(e))
