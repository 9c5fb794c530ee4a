"""Pydantic models for the scheduling engine."""

import uuid
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def _new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(str, Enum):
    """Therapy session lifecycle statuses."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


# Statuses that never occupy a therapist, student or room.
INACTIVE_STATUSES = frozenset({SessionStatus.CANCELLED, SessionStatus.NO_SHOW})


class SessionCategory(str, Enum):
    THERAPY = "therapy"
    ASSESSMENT = "assessment"
    CONSULTATION = "consultation"
    GROUP_SESSION = "group_session"
    EVALUATION = "evaluation"


class PriorityLevel(int, Enum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4
    CRITICAL = 5


class ConflictType(str, Enum):
    """Kinds of scheduling conflicts the detector reports."""

    THERAPIST_DOUBLE_BOOKING = "therapist_double_booking"
    THERAPIST_UNAVAILABLE = "therapist_unavailable"
    STUDENT_DOUBLE_BOOKING = "student_double_booking"
    ROOM_UNAVAILABLE = "room_unavailable"
    EQUIPMENT_CONFLICT = "equipment_conflict"
    TIME_CONSTRAINT = "time_constraint"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    INSUFFICIENT_GAP = "insufficient_gap"
    NO_SLOT_AVAILABLE = "no_slot_available"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def is_blocking(self) -> bool:
        """High and critical conflicts prevent a session from being kept."""
        return self.rank >= _SEVERITY_RANK[ConflictSeverity.HIGH]


_SEVERITY_RANK = {
    ConflictSeverity.LOW: 1,
    ConflictSeverity.MEDIUM: 2,
    ConflictSeverity.HIGH: 3,
    ConflictSeverity.CRITICAL: 4,
}


class OperationStatus(str, Enum):
    """Status of a bulk or freeze operation log."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class BulkOperationType(str, Enum):
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    MODIFY = "modify"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    BETWEEN = "between"
    AND = "and"
    OR = "or"


class OptimizationActionType(str, Enum):
    BOOST_SCORE = "boost_score"
    PENALIZE_SCORE = "penalize_score"
    REJECT = "reject"
    PREFER = "prefer"
    OPTIMIZE_GAPS = "optimize_gaps"


# ---------------------------------------------------------------------------
# Calendar primitives
# ---------------------------------------------------------------------------

class TimeWindow(BaseModel):
    """A time-of-day window, e.g. a preferred slot or an availability block."""

    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class TherapistAvailability(BaseModel):
    """Recurring (``day_of_week``) or one-off (``specific_date``) availability.

    A specific-date entry replaces the recurring entries of that therapist for
    that date. Entries flagged ``is_time_off`` or ``is_available=False`` block
    their window instead of opening it.
    """

    id: Optional[str] = None
    therapist_id: str
    day_of_week: Optional[int] = Field(None, ge=0, le=6, description="0=Mon..6=Sun")
    specific_date: Optional[date] = None
    start_time: time
    end_time: time
    is_available: bool = True
    is_time_off: bool = False
    max_sessions_per_slot: int = 1

    @model_validator(mode="after")
    def _check_shape(self) -> "TherapistAvailability":
        if self.day_of_week is None and self.specific_date is None:
            raise ValueError("either day_of_week or specific_date is required")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def opens_time(self) -> bool:
        return self.is_available and not self.is_time_off


class ScheduledSession(BaseModel):
    """A single therapy session on the calendar."""

    id: str = Field(default_factory=_new_id)
    session_number: Optional[str] = None
    student_subscription_id: Optional[str] = None
    student_id: Optional[str] = None
    therapist_id: str
    scheduled_date: date
    start_time: time
    end_time: time
    duration_minutes: int = Field(gt=0)
    category: SessionCategory = SessionCategory.THERAPY
    priority: PriorityLevel = PriorityLevel.MEDIUM
    status: SessionStatus = SessionStatus.SCHEDULED
    room_id: Optional[str] = None
    equipment_ids: list[str] = Field(default_factory=list)
    optimization_score: float = Field(0.0, ge=0.0, le=100.0)
    reschedule_count: int = 0
    original_session_id: Optional[str] = None
    reschedule_reason: Optional[str] = None
    notes: Optional[str] = None
    generation_algorithm: Optional[str] = None

    @model_validator(mode="after")
    def _check_times(self) -> "ScheduledSession":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.scheduled_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.scheduled_date, self.end_time)

    def overlaps(self, other: "ScheduledSession") -> bool:
        """True when both sessions share the date and their times intersect."""
        return (
            self.scheduled_date == other.scheduled_date
            and self.start_time < other.end_time
            and other.start_time < self.end_time
        )


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class SchedulingRequest(BaseModel):
    """Enrollment to be turned into a program of sessions."""

    student_subscription_id: str = ""
    student_id: Optional[str] = None
    preferred_therapist_id: Optional[str] = None
    preferred_times: list[TimeWindow] = Field(default_factory=list)
    avoid_times: list[TimeWindow] = Field(default_factory=list)
    preferred_days: list[int] = Field(default_factory=list, description="0=Mon..6=Sun")
    avoid_days: list[int] = Field(default_factory=list, description="0=Mon..6=Sun")
    start_date: date
    end_date: date
    total_sessions: int
    sessions_per_week: int = 2
    session_duration: int = Field(45, description="Minutes per session")
    session_category: SessionCategory = SessionCategory.THERAPY
    priority_level: PriorityLevel = PriorityLevel.MEDIUM
    flexibility_score: float = Field(50.0, ge=0.0, le=100.0)
    room_id: Optional[str] = None
    required_equipment: list[str] = Field(default_factory=list)
    max_sessions_per_day: int = Field(1, ge=1)


class SchedulingSuggestion(BaseModel):
    """An alternative placement offered for a conflicting session."""

    session_id: Optional[str] = None
    suggestion_type: str
    description: str
    therapist_id: str
    suggested_date: date
    start_time: time
    end_time: time
    confidence: int = Field(ge=0, le=100)


class ScheduleConflict(BaseModel):
    id: str = Field(default_factory=_new_id)
    conflict_type: ConflictType
    severity: ConflictSeverity
    session_id: Optional[str] = None
    conflicting_session_id: Optional[str] = None
    therapist_id: Optional[str] = None
    student_id: Optional[str] = None
    room_id: Optional[str] = None
    equipment_id: Optional[str] = None
    conflict_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    description: str
    auto_resolvable: bool = False


class SchedulingResult(BaseModel):
    """Outcome of a schedule generation run."""

    success: bool
    generated_sessions: list[ScheduledSession] = Field(default_factory=list)
    conflicts: list[ScheduleConflict] = Field(default_factory=list)
    suggestions: list[SchedulingSuggestion] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    optimization_score: float = 0.0
    therapist_utilization: float = 0.0
    preference_match_score: float = 0.0
    total_conflicts: int = 0
    unscheduled_sessions: int = 0
    iterations: int = 0
    algorithm_used: str
    generation_time_ms: float = 0.0


class BatchConflictOptions(BaseModel):
    include_resources: bool = True
    check_within_batch: bool = True


class AutoResolutionResult(BaseModel):
    resolved: bool
    status: str
    message: str
    updated_session: Optional[ScheduledSession] = None


# ---------------------------------------------------------------------------
# Optimization rules
# ---------------------------------------------------------------------------

class OptimizationCondition(BaseModel):
    """Predicate over the rule context.

    ``field`` is a dotted path into the context (``request.flexibility_score``)
    or one of the computed fields ``time_range``, ``therapist_workload`` and
    ``session_gaps``. ``and`` / ``or`` combine the nested ``conditions``.
    """

    field: str = ""
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    params: dict[str, Any] = Field(default_factory=dict)
    conditions: list["OptimizationCondition"] = Field(default_factory=list)


class OptimizationAction(BaseModel):
    action_type: OptimizationActionType
    score_impact: Optional[float] = None
    params: dict[str, Any] = Field(default_factory=dict)
    target_filter: dict[str, Any] = Field(
        default_factory=dict,
        description="therapist_id, category or time_range ({start, end}) narrowing the target sessions",
    )


class OptimizationRule(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    rule_type: str = "custom"
    priority: int = 5
    weight: float = 1.0
    conditions: list[OptimizationCondition] = Field(default_factory=list)
    actions: list[OptimizationAction] = Field(default_factory=list)
    is_active: bool = True


class RuleOutcome(BaseModel):
    rule_id: str
    rule_name: str
    matched: bool
    success: bool = True
    score_impact: float = 0.0
    affected_session_ids: list[str] = Field(default_factory=list)
    message: Optional[str] = None
    execution_time_ms: float = 0.0


class RuleExecutionResult(BaseModel):
    optimization_score: float
    sessions: list[ScheduledSession] = Field(default_factory=list)
    rules_applied: list[str] = Field(default_factory=list)
    rule_results: list[RuleOutcome] = Field(default_factory=list)
    rejected_session_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0


class RuleStatistics(BaseModel):
    executions: int = 0
    successes: int = 0
    failures: int = 0
    total_time_ms: float = 0.0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.executions if self.executions else 0.0


class RuleValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Bulk rescheduling
# ---------------------------------------------------------------------------

class DateRange(BaseModel):
    start_date: date
    end_date: date


class BulkReschedulingRequest(BaseModel):
    """A batch change applied atomically per batch with a stored rollback.

    ``request_id`` makes the request idempotent: a second submission with the
    same id replays the stored result instead of applying again.
    """

    request_id: Optional[str] = None
    session_ids: list[str]
    operation_type: BulkOperationType
    reason: str
    new_date_range: Optional[DateRange] = None
    new_therapist_id: Optional[str] = None
    preserve_time_preferences: bool = True
    modifications: dict[str, Any] = Field(default_factory=dict)
    initiated_by: Optional[str] = None


class BulkSessionOutcome(BaseModel):
    session_id: str
    success: bool
    message: str = ""
    new_date: Optional[date] = None
    new_start_time: Optional[time] = None
    new_therapist_id: Optional[str] = None


class BulkReschedulingResult(BaseModel):
    operation_id: str
    success: bool
    status: OperationStatus
    total_sessions: int = 0
    successful_count: int = 0
    failed_count: int = 0
    outcomes: list[BulkSessionOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    rollback_available: bool = False
    processing_time_ms: float = 0.0
    replayed: bool = False


class OperationProgress(BaseModel):
    operation_id: str
    operation_type: str
    status: OperationStatus
    total_sessions: int
    processed_sessions: int
    successful_sessions: int
    failed_sessions: int
    progress_percentage: float
    current_step: Optional[str] = None
    rollback_available: bool = False
    rollback_executed: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RollbackResult(BaseModel):
    operation_id: str
    success: bool
    restored_count: int = 0
    message: str = ""


# ---------------------------------------------------------------------------
# Subscription freeze
# ---------------------------------------------------------------------------

class ReschedulingRequest(BaseModel):
    """Freeze a subscription and move the sessions inside the freeze window."""

    request_id: Optional[str] = None
    subscription_id: str
    student_id: Optional[str] = None
    freeze_start_date: date
    freeze_end_date: date
    freeze_days: int
    reason: Optional[str] = None
    holidays: list[date] = Field(default_factory=list)


class RollbackInfo(BaseModel):
    operation_id: str
    original_end_date: date
    session_snapshots: list[dict[str, Any]] = Field(default_factory=list)
    rollback_available: bool = True


class ReschedulingResult(BaseModel):
    success: bool
    operation_id: Optional[str] = None
    sessions_rescheduled: int = 0
    conflicts_detected: list[ScheduleConflict] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    new_end_date: Optional[date] = None
    rollback_info: Optional[RollbackInfo] = None
    rescheduled_sessions: list[ScheduledSession] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    replayed: bool = False


class TimelineAdjustment(BaseModel):
    subscription_id: str
    original_end_date: date
    new_end_date: date
    freeze_days: int
    adjustment_days: int
    extension_percentage: float
    calculation_method: str


class SubscriptionSnapshot(BaseModel):
    """The subscription fields freeze validation and planning read."""

    id: str
    student_id: Optional[str] = None
    status: str = "active"
    start_date: date
    end_date: date
    total_freeze_days_allowed: int = 0
    freeze_days_used: int = 0
    exclude_weekends: bool = False


class FreezePeriod(BaseModel):
    freeze_start_date: date
    freeze_end_date: date
    status: str = "active"


class FreezeValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    business_rule_violations: list[str] = Field(default_factory=list)
    affected_sessions: int = 0
    freeze_days_remaining: int = 0
