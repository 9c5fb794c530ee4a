"""Therapy session scheduling, conflict detection and rescheduling."""

from therapy_scheduler.scheduling.bulk import (
    BulkReschedulingEngine,
    OperationNotFoundError,
    RollbackRefusedError,
)
from therapy_scheduler.scheduling.conflicts import ConflictDetector
from therapy_scheduler.scheduling.freeze import (
    ReschedulingEngine,
    calculate_new_end_date,
    plan_freeze_reschedule,
    validate_freeze_request,
)
from therapy_scheduler.scheduling.generator import SchedulingEngine, validate_scheduling_request
from therapy_scheduler.scheduling.rules import OptimizationRuleEngine

__all__ = [
    "BulkReschedulingEngine",
    "ConflictDetector",
    "OperationNotFoundError",
    "OptimizationRuleEngine",
    "ReschedulingEngine",
    "RollbackRefusedError",
    "SchedulingEngine",
    "calculate_new_end_date",
    "plan_freeze_reschedule",
    "validate_freeze_request",
    "validate_scheduling_request",
]
