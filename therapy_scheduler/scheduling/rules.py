"""Configurable optimization rules applied to generated schedules."""

import logging
from collections import defaultdict
from datetime import time
from time import perf_counter
from typing import Any, Optional, Sequence

from therapy_scheduler.scheduling.conflicts import ConflictDetector
from therapy_scheduler.scheduling.models import (
    ConditionOperator,
    OptimizationAction,
    OptimizationActionType,
    OptimizationCondition,
    OptimizationRule,
    PriorityLevel,
    RuleExecutionResult,
    RuleOutcome,
    RuleStatistics,
    RuleValidationResult,
    ScheduledSession,
    SchedulingRequest,
)
from therapy_scheduler.scheduling.timeslots import add_minutes, minutes_between

logger = logging.getLogger(__name__)

DEFAULT_SESSION_SCORE = 50.0
DEFAULT_BOOST = 10.0
DEFAULT_PENALTY = 10.0
PREFER_BOOST = 20.0
REJECT_IMPACT = -50.0
DEFAULT_MAX_WORKLOAD = 8
DEFAULT_MAX_GAP_MINUTES = 60

SESSION_SCORE_SHARE = 0.7
RULE_IMPACT_SHARE = 0.3

_COMPUTED_FIELDS = {"time_range", "therapist_workload", "session_gaps"}


class RuleEvaluationError(Exception):
    """Raised when a rule cannot be evaluated against its context."""


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _as_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


class OptimizationRuleEngine:
    """Evaluates prioritized condition/action rules over a set of sessions.

    Rules run highest priority first. Each rule whose conditions all hold
    applies its actions to the (optionally filtered) sessions; a failing
    rule is recorded and skipped, it never aborts the run.
    """

    def __init__(self, detector: Optional[ConflictDetector] = None) -> None:
        self.detector = detector or ConflictDetector()
        self._stats: dict[str, RuleStatistics] = defaultdict(RuleStatistics)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_rules(
        self,
        sessions: Sequence[ScheduledSession],
        request: Optional[SchedulingRequest],
        rules: Sequence[OptimizationRule],
        context: Optional[dict[str, Any]] = None,
    ) -> RuleExecutionResult:
        started = perf_counter()
        working = [s.model_copy(deep=True) for s in sessions]
        for s in working:
            if not s.optimization_score:
                s.optimization_score = DEFAULT_SESSION_SCORE

        ctx: dict[str, Any] = dict(context or {})
        ctx["request"] = request.model_dump(mode="json") if request is not None else {}

        outcomes: list[RuleOutcome] = []
        rejected: list[str] = []
        warnings: list[str] = []

        active = sorted((r for r in rules if r.is_active), key=lambda r: -r.priority)
        for rule in active:
            ctx["sessions"] = working
            ctx["session_count"] = len(working)
            rule_started = perf_counter()
            stats = self._stats[rule.id]
            stats.executions += 1
            try:
                matched = all(self.evaluate_condition(c, ctx, warnings) for c in rule.conditions)
                impact = 0.0
                affected: list[str] = []
                if matched:
                    for action in rule.actions:
                        delta, ids = self._apply_action(action, working, ctx)
                        impact += delta * rule.weight
                        affected.extend(ids)
                        if action.action_type == OptimizationActionType.REJECT:
                            rejected.extend(ids)
                            working = [s for s in working if s.id not in set(ids)]
                elapsed = (perf_counter() - rule_started) * 1000
                stats.successes += 1
                stats.total_time_ms += elapsed
                outcomes.append(RuleOutcome(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    matched=matched,
                    score_impact=impact,
                    affected_session_ids=affected,
                    execution_time_ms=elapsed,
                ))
            except (RuleEvaluationError, ValueError, TypeError, KeyError) as e:
                elapsed = (perf_counter() - rule_started) * 1000
                stats.failures += 1
                stats.total_time_ms += elapsed
                logger.warning("Optimization rule %r failed: %s", rule.name, e)
                outcomes.append(RuleOutcome(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    matched=False,
                    success=False,
                    message=str(e),
                    execution_time_ms=elapsed,
                ))

        score = self.calculate_score(working, [o.score_impact for o in outcomes])
        return RuleExecutionResult(
            optimization_score=score,
            sessions=working,
            rules_applied=[o.rule_id for o in outcomes if o.matched and o.success],
            rule_results=outcomes,
            rejected_session_ids=rejected,
            warnings=warnings,
            execution_time_ms=(perf_counter() - started) * 1000,
        )

    @staticmethod
    def calculate_score(sessions: Sequence[ScheduledSession], impacts: Sequence[float]) -> float:
        """Blend the mean session score with the summed rule impacts, clamped to 0-100."""
        if not sessions:
            return 0.0
        mean = sum(s.optimization_score for s in sessions) / len(sessions)
        return round(_clamp(mean * SESSION_SCORE_SHARE + sum(impacts) * RULE_IMPACT_SHARE), 2)

    def get_statistics(self, rule_id: Optional[str] = None) -> dict[str, RuleStatistics]:
        if rule_id is not None:
            return {rule_id: self._stats[rule_id]} if rule_id in self._stats else {}
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def evaluate_condition(
        self,
        condition: OptimizationCondition,
        context: dict[str, Any],
        warnings: Optional[list[str]] = None,
    ) -> bool:
        op = condition.operator
        if op == ConditionOperator.AND:
            return all(self.evaluate_condition(c, context, warnings) for c in condition.conditions)
        if op == ConditionOperator.OR:
            return any(self.evaluate_condition(c, context, warnings) for c in condition.conditions)

        if condition.field in _COMPUTED_FIELDS:
            return self._evaluate_computed(condition, context)

        found, value = self._resolve(condition.field, context)
        if not found:
            message = f"Unknown condition field: {condition.field}"
            logger.debug(message)
            if warnings is not None:
                warnings.append(message)
            return True

        expected = condition.value
        if op == ConditionOperator.EQUALS:
            return value == expected
        if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            if not self._is_number(value) or not self._is_number(expected):
                return False
            return value > expected if op == ConditionOperator.GREATER_THAN else value < expected
        if op == ConditionOperator.CONTAINS:
            if isinstance(value, (list, tuple, set)):
                return expected in value
            if isinstance(value, str):
                return str(expected) in value
            return False
        if op == ConditionOperator.BETWEEN:
            if not self._is_number(value) or not isinstance(expected, (list, tuple)) or len(expected) != 2:
                return False
            return expected[0] <= value <= expected[1]
        raise RuleEvaluationError(f"Unsupported operator: {op}")

    @staticmethod
    def _is_number(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    @staticmethod
    def _resolve(path: str, context: dict[str, Any]) -> tuple[bool, Any]:
        """Follow a dotted path through dicts, attributes and list indexes."""
        if not path:
            return False, None
        current: Any = context
        for part in path.split("."):
            if isinstance(current, dict):
                if part not in current:
                    return False, None
                current = current[part]
            elif isinstance(current, (list, tuple)) and part.isdigit():
                index = int(part)
                if index >= len(current):
                    return False, None
                current = current[index]
            elif hasattr(current, part):
                current = getattr(current, part)
            else:
                return False, None
        return True, current

    def _evaluate_computed(self, condition: OptimizationCondition, context: dict[str, Any]) -> bool:
        sessions: list[ScheduledSession] = context.get("sessions", [])
        params = condition.params

        if condition.field == "time_range":
            window = params.get("time_range") or condition.value
            if not window:
                return False
            start, end = _as_time(window["start"]), _as_time(window["end"])
            return any(s.start_time >= start and s.end_time <= end for s in sessions)

        if condition.field == "therapist_workload":
            limit = params.get("max_sessions", DEFAULT_MAX_WORKLOAD)
            counts: dict[tuple, int] = defaultdict(int)
            for s in sessions:
                counts[(s.therapist_id, s.scheduled_date)] += 1
            return any(count > limit for count in counts.values())

        # session_gaps
        max_gap = params.get("max_gap_minutes", DEFAULT_MAX_GAP_MINUTES)
        return any(gap > max_gap for _, _, gap in self._gaps(sessions))

    @staticmethod
    def _gaps(sessions: Sequence[ScheduledSession]):
        """(earlier, later, gap minutes) for consecutive sessions per therapist and day."""
        grouped: dict[tuple, list[ScheduledSession]] = defaultdict(list)
        for s in sessions:
            grouped[(s.therapist_id, s.scheduled_date)].append(s)
        for day_sessions in grouped.values():
            day_sessions.sort(key=lambda s: s.start_time)
            for earlier, later in zip(day_sessions, day_sessions[1:]):
                yield earlier, later, minutes_between(earlier.end_time, later.start_time)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _targets(self, action: OptimizationAction, sessions: Sequence[ScheduledSession]) -> list[ScheduledSession]:
        f = action.target_filter
        targets = list(sessions)
        if f.get("therapist_id"):
            targets = [s for s in targets if s.therapist_id == f["therapist_id"]]
        if f.get("category"):
            targets = [s for s in targets if s.category.value == f["category"]]
        if f.get("time_range"):
            start, end = _as_time(f["time_range"]["start"]), _as_time(f["time_range"]["end"])
            targets = [s for s in targets if start <= s.start_time <= end]
        return targets

    def _apply_action(
        self,
        action: OptimizationAction,
        sessions: list[ScheduledSession],
        context: dict[str, Any],
    ) -> tuple[float, list[str]]:
        """Apply *action* in place; return (rule impact, affected session ids)."""
        kind = action.action_type
        targets = self._targets(action, sessions)
        ids = [s.id for s in targets]

        if kind == OptimizationActionType.BOOST_SCORE:
            boost = action.score_impact if action.score_impact is not None else DEFAULT_BOOST
            for s in targets:
                s.optimization_score = _clamp(s.optimization_score + boost)
            return boost, ids

        if kind == OptimizationActionType.PENALIZE_SCORE:
            penalty = abs(action.score_impact) if action.score_impact is not None else DEFAULT_PENALTY
            for s in targets:
                s.optimization_score = _clamp(s.optimization_score - penalty)
            return -penalty, ids

        if kind == OptimizationActionType.REJECT:
            return REJECT_IMPACT, ids

        if kind == OptimizationActionType.PREFER:
            boost = action.score_impact if action.score_impact is not None else PREFER_BOOST
            for s in targets:
                if s.priority < PriorityLevel.HIGH:
                    s.priority = PriorityLevel.HIGH
                s.optimization_score = _clamp(s.optimization_score + boost)
            return boost / 2, ids

        if kind == OptimizationActionType.OPTIMIZE_GAPS:
            max_gap = action.params.get("max_gap_minutes", DEFAULT_MAX_GAP_MINUTES)
            min_break = action.params.get("min_break_minutes", 0)
            target_ids = set(ids)
            existing = [
                s if isinstance(s, ScheduledSession) else ScheduledSession.model_validate(s)
                for s in context.get("existing_sessions") or []
            ]
            moved: list[str] = []
            for earlier, later, gap in list(self._gaps(sessions)):
                if later.id not in target_ids or gap <= max_gap:
                    continue
                new_start = add_minutes(earlier.end_time, min_break)
                candidate = later.model_copy(update={
                    "start_time": new_start,
                    "end_time": add_minutes(new_start, later.duration_minutes),
                })
                others = [s for s in sessions if s.id != later.id] + existing
                if not self.detector.is_slot_clear(candidate, others):
                    continue
                later.start_time = candidate.start_time
                later.end_time = candidate.end_time
                moved.append(later.id)
            return len(moved) * 2.0, moved

        raise RuleEvaluationError(f"Unsupported action: {kind}")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_rule(self, rule: OptimizationRule) -> RuleValidationResult:
        """Check a rule's shape, then dry-run it against an empty context."""
        errors: list[str] = []
        warnings: list[str] = []

        if not rule.name or not rule.name.strip():
            errors.append("Rule name is required")
        if not 1 <= rule.priority <= 10:
            errors.append("Priority must be between 1 and 10")
        if not 0 <= rule.weight <= 5:
            warnings.append("Weight outside the recommended range 0-5")
        if not rule.actions:
            errors.append("At least one action is required")
        for action in rule.actions:
            if action.score_impact is not None and abs(action.score_impact) > 100:
                errors.append(f"Score impact for {action.action_type.value} must be within -100..100")
        for condition in rule.conditions:
            if condition.operator in (ConditionOperator.AND, ConditionOperator.OR) and not condition.conditions:
                errors.append(f"'{condition.operator.value}' condition needs nested conditions")
            if condition.operator == ConditionOperator.BETWEEN and (
                not isinstance(condition.value, (list, tuple)) or len(condition.value) != 2
            ):
                errors.append("'between' condition needs a [low, high] value")

        if not errors:
            try:
                dry_run = OptimizationRuleEngine()
                dry_run.execute_rules([], None, [rule.model_copy(update={"is_active": True})], {})
                if dry_run.get_statistics(rule.id)[rule.id].failures:
                    errors.append("Rule failed a dry run against an empty schedule")
            except (RuleEvaluationError, ValueError, TypeError, KeyError) as e:
                errors.append(f"Rule failed a dry run: {e}")

        return RuleValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
