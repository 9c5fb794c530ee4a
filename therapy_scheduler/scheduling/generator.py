"""Schedule generation for therapy programs.

Turns an enrollment (``SchedulingRequest``) plus therapist availability and the
sessions already on the calendar into a concrete program of sessions:

1. candidate slots are enumerated from availability, with avoided days/times,
   time off and already-booked therapists, students, rooms and equipment
   removed as hard constraints;
2. a weekly greedy pass picks the best-scoring candidates under a
   multi-criteria score (preference match, workload balance, gap
   minimisation, spacing) whose weights shift with the student's flexibility;
3. a bounded local search swaps picks for unused candidates of the same week
   while the total score strictly improves;
4. optional optimization rules run, then a final conflict pass drops sessions
   with blocking conflicts and offers alternatives for them.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, time
from time import perf_counter
from typing import Optional, Sequence

from therapy_scheduler.config import Settings, get_settings
from therapy_scheduler.observability.logger import ObservabilityLogger
from therapy_scheduler.scheduling.conflicts import ConflictDetector
from therapy_scheduler.scheduling.models import (
    BatchConflictOptions,
    OptimizationRule,
    ScheduleConflict,
    ScheduledSession,
    SchedulingRequest,
    SchedulingResult,
    SchedulingSuggestion,
    SessionStatus,
    TherapistAvailability,
)
from therapy_scheduler.scheduling.rules import OptimizationRuleEngine
from therapy_scheduler.scheduling.timeslots import (
    add_minutes,
    day_windows,
    daterange,
    intervals_overlap,
    minutes_between,
    slot_starts,
    therapist_ids,
    to_minutes,
    week_start,
    window_distance,
)

logger = logging.getLogger(__name__)

ALGORITHM_NAME = "multi_criteria_greedy_local_search"

# Distance from a preferred window at which the time match reaches zero.
_PREFERENCE_FALLOFF_MINUTES = 240
# Gap to the nearest neighbour session at which the gap score reaches zero.
_GAP_FALLOFF_MINUTES = 120
_IMPROVEMENT_EPSILON = 1e-9


def validate_scheduling_request(request: SchedulingRequest) -> list[str]:
    """Return validation errors for *request* (empty when valid)."""
    errors: list[str] = []
    if not request.student_subscription_id:
        errors.append("student_subscription_id is required")
    if request.start_date >= request.end_date:
        errors.append("start_date must be before end_date")
    if request.total_sessions <= 0:
        errors.append("total_sessions must be greater than 0")
    if request.session_duration <= 0:
        errors.append("session_duration must be greater than 0")
    if request.sessions_per_week <= 0:
        errors.append("sessions_per_week must be greater than 0")
    return errors


@dataclass(frozen=True)
class CandidateSlot:
    """A feasible placement for one session."""

    therapist_id: str
    day: date
    start_time: time
    end_time: time
    preference: float = field(default=0.0, compare=False)

    @property
    def sort_key(self) -> tuple:
        return (self.day, self.start_time, self.therapist_id)

    def clashes_with(self, other: "CandidateSlot") -> bool:
        return self.day == other.day and intervals_overlap(
            self.start_time, self.end_time, other.start_time, other.end_time
        )


@dataclass
class _ScoringContext:
    """Per-run state shared by the greedy and local-search phases."""

    request: SchedulingRequest
    weights: tuple[float, float, float, float]
    existing_by_therapist_day: dict[tuple[str, date], list[tuple[int, int]]]
    max_sessions_per_day: int

    def feasible(self, slot: CandidateSlot, selected: Sequence[CandidateSlot]) -> bool:
        same_day = [s for s in selected if s.day == slot.day]
        if len(same_day) >= self.request.max_sessions_per_day:
            return False
        if any(slot.clashes_with(s) for s in same_day):
            return False
        therapist_load = len(self.existing_by_therapist_day.get((slot.therapist_id, slot.day), []))
        therapist_load += sum(1 for s in same_day if s.therapist_id == slot.therapist_id)
        return therapist_load < self.max_sessions_per_day

    def score(self, slot: CandidateSlot, selected: Sequence[CandidateSlot]) -> float:
        """Weighted score in [0, 1] of *slot* given the other picks."""
        others = [s for s in selected if s != slot]
        neighbours = list(self.existing_by_therapist_day.get((slot.therapist_id, slot.day), []))
        neighbours.extend(
            (to_minutes(s.start_time), to_minutes(s.end_time))
            for s in others
            if s.therapist_id == slot.therapist_id and s.day == slot.day
        )

        workload = max(0.0, 1.0 - len(neighbours) / self.max_sessions_per_day)

        if not neighbours:
            gap_score = 0.5
        else:
            start, end = to_minutes(slot.start_time), to_minutes(slot.end_time)
            nearest = min(
                max(0, n_start - end) if n_start >= end else max(0, start - n_end)
                for n_start, n_end in neighbours
            )
            gap_score = max(0.0, 1.0 - nearest / _GAP_FALLOFF_MINUTES)

        if not others:
            spacing = 1.0
        else:
            closest = min(abs((s.day - slot.day).days) for s in others)
            spacing = 0.0 if closest == 0 else 0.4 if closest == 1 else 1.0

        pw, ww, gw, sw = self.weights
        total = pw + ww + gw + sw
        if total == 0:
            return 0.0
        return (pw * slot.preference + ww * workload + gw * gap_score + sw * spacing) / total

    def local_objective(self, selection: Sequence[CandidateSlot], *days: date) -> float:
        """Sum of scores of the picks whose score can depend on *days*."""
        return sum(
            self.score(s, selection)
            for s in selection
            if any(abs((s.day - d).days) <= 1 for d in days)
        )


class SchedulingEngine:
    """Generates optimized session programs from enrollment requests."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        detector: Optional[ConflictDetector] = None,
        rule_engine: Optional[OptimizationRuleEngine] = None,
        observability: Optional[ObservabilityLogger] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector.from_settings(self.settings)
        self.rule_engine = rule_engine or OptimizationRuleEngine(self.detector)
        self.observability = observability

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate_schedule(
        self,
        request: SchedulingRequest,
        availability: Sequence[TherapistAvailability],
        existing_sessions: Sequence[ScheduledSession] = (),
        rules: Optional[Sequence[OptimizationRule]] = None,
    ) -> SchedulingResult:
        """Generate a program of sessions for *request*.

        Never raises on business failures: invalid requests come back with
        ``success=False`` and the reasons in ``warnings``.
        """
        if self.observability is None:
            return self._generate(request, availability, existing_sessions, rules)

        with self.observability.engine_run(
            "generate_schedule",
            subject_id=request.student_subscription_id,
            input_count=request.total_sessions,
        ) as event:
            result = self._generate(request, availability, existing_sessions, rules)
            event.output_count = len(result.generated_sessions)
            event.conflict_count = result.total_conflicts
            event.success = result.success
            event.metadata = {
                "optimization_score": result.optimization_score,
                "iterations": result.iterations,
            }
            return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _generate(self, request, availability, existing_sessions, rules) -> SchedulingResult:
        started = perf_counter()

        errors = validate_scheduling_request(request)
        if errors:
            logger.warning("Rejected scheduling request %s: %s", request.student_subscription_id, errors)
            return SchedulingResult(
                success=False,
                warnings=errors,
                unscheduled_sessions=max(request.total_sessions, 0),
                algorithm_used="validation_failed",
                generation_time_ms=(perf_counter() - started) * 1000,
            )

        existing = [s for s in existing_sessions if s.is_active]
        ctx = self._scoring_context(request, existing)

        candidates = self._generate_candidates(request, availability, existing)
        logger.debug("Generated %d candidate slots for %s", len(candidates), request.student_subscription_id)

        selected = self._construct(ctx, candidates)
        selected, iterations = self._improve(ctx, candidates, selected)
        sessions = self._build_sessions(ctx, request, selected)

        warnings: list[str] = []
        rule_score: Optional[float] = None
        if rules:
            rule_result = self.rule_engine.execute_rules(
                sessions,
                request,
                rules,
                context={"existing_sessions": [s.model_dump(mode="json") for s in existing]},
            )
            sessions = rule_result.sessions
            rule_score = rule_result.optimization_score
            warnings.extend(rule_result.warnings)

        sessions, conflicts, suggestions, dropped = self._conflict_pass(sessions, existing, availability)
        sessions = self._number(sessions)

        scheduled = len(sessions)
        if not candidates:
            warnings.append("No available slots matched the request constraints")
        if scheduled < request.total_sessions:
            warnings.append(f"Only {scheduled} of {request.total_sessions} sessions could be scheduled")
        if conflicts:
            warnings.append(f"{len(conflicts)} conflicts detected")
        if dropped:
            warnings.append(f"{dropped} sessions removed due to high-severity conflicts")

        if rule_score is not None:
            optimization_score = rule_score
        elif sessions:
            optimization_score = sum(s.optimization_score for s in sessions) / scheduled
        else:
            optimization_score = 0.0

        kept = {(s.therapist_id, s.scheduled_date, s.start_time) for s in sessions}
        kept_slots = [c for c in selected if (c.therapist_id, c.day, c.start_time) in kept]
        preference = (
            sum(c.preference for c in kept_slots) / len(kept_slots) * 100 if kept_slots else 0.0
        )

        result = SchedulingResult(
            success=scheduled > 0,
            generated_sessions=sessions,
            conflicts=conflicts,
            suggestions=suggestions,
            warnings=warnings,
            optimization_score=round(optimization_score, 2),
            therapist_utilization=self._utilization(request, availability, existing, sessions),
            preference_match_score=round(preference, 2),
            total_conflicts=len(conflicts),
            unscheduled_sessions=max(request.total_sessions - scheduled, 0),
            iterations=iterations,
            algorithm_used=ALGORITHM_NAME,
            generation_time_ms=(perf_counter() - started) * 1000,
        )
        logger.info(
            "Scheduled %d/%d sessions for %s (score=%.2f, conflicts=%d, %.1fms)",
            scheduled, request.total_sessions, request.student_subscription_id,
            result.optimization_score, result.total_conflicts, result.generation_time_ms,
        )
        return result

    def _scoring_context(self, request, existing) -> _ScoringContext:
        settings = self.settings
        flex = request.flexibility_score / 100
        preference_factor = 1.5 - flex
        other_factor = 0.5 + flex
        weights = (
            settings.preference_weight * preference_factor,
            settings.workload_weight * other_factor,
            settings.gap_weight * other_factor,
            settings.spacing_weight * other_factor,
        )

        by_therapist_day: dict[tuple[str, date], list[tuple[int, int]]] = defaultdict(list)
        for s in existing:
            by_therapist_day[(s.therapist_id, s.scheduled_date)].append(
                (to_minutes(s.start_time), to_minutes(s.end_time))
            )

        return _ScoringContext(
            request=request,
            weights=weights,
            existing_by_therapist_day=dict(by_therapist_day),
            max_sessions_per_day=self.detector.max_sessions_per_day,
        )

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def _generate_candidates(self, request, availability, existing) -> list[CandidateSlot]:
        therapists = (
            [request.preferred_therapist_id] if request.preferred_therapist_id
            else therapist_ids(availability)
        )
        duration = request.session_duration
        avoid_days = set(request.avoid_days)

        busy: dict[tuple, list[ScheduledSession]] = defaultdict(list)
        for s in existing:
            busy[("therapist", s.therapist_id, s.scheduled_date)].append(s)
            if request.student_id and s.student_id == request.student_id:
                busy[("student", s.scheduled_date)].append(s)
            elif s.student_subscription_id == request.student_subscription_id:
                busy[("student", s.scheduled_date)].append(s)
            if request.room_id and s.room_id == request.room_id:
                busy[("room", s.scheduled_date)].append(s)
            if set(request.required_equipment) & set(s.equipment_ids):
                busy[("equipment", s.scheduled_date)].append(s)

        candidates: list[CandidateSlot] = []
        for day in daterange(request.start_date, request.end_date):
            if day.weekday() in avoid_days:
                continue
            occupied = (
                busy.get(("student", day), [])
                + busy.get(("room", day), [])
                + busy.get(("equipment", day), [])
            )
            for therapist_id in therapists:
                windows, blocked = day_windows(availability, therapist_id, day)
                if not windows:
                    continue
                taken = occupied + busy.get(("therapist", therapist_id, day), [])
                for start in slot_starts(
                    windows,
                    duration,
                    self.settings.slot_step_minutes,
                    blocked=blocked,
                    earliest=self.detector.business_start,
                    latest_end=self.detector.business_end,
                ):
                    end = add_minutes(start, duration)
                    if any(
                        intervals_overlap(start, end, w.start_time, w.end_time)
                        for w in request.avoid_times
                    ):
                        continue
                    if any(intervals_overlap(start, end, s.start_time, s.end_time) for s in taken):
                        continue
                    candidates.append(CandidateSlot(
                        therapist_id=therapist_id,
                        day=day,
                        start_time=start,
                        end_time=end,
                        preference=self._preference(request, day, start, end),
                    ))
        return sorted(candidates, key=lambda c: c.sort_key)

    @staticmethod
    def _preference(request: SchedulingRequest, day: date, start: time, end: time) -> float:
        day_match = 1.0 if not request.preferred_days or day.weekday() in request.preferred_days else 0.0
        if not request.preferred_times:
            time_match = 1.0
        else:
            distance = min(window_distance(start, end, w) for w in request.preferred_times)
            time_match = max(0.0, 1.0 - distance / _PREFERENCE_FALLOFF_MINUTES)
        return (day_match + time_match) / 2

    # ------------------------------------------------------------------
    # Greedy construction + local search
    # ------------------------------------------------------------------

    @staticmethod
    def _by_week(candidates: Sequence[CandidateSlot]) -> dict[date, list[CandidateSlot]]:
        weeks: dict[date, list[CandidateSlot]] = defaultdict(list)
        for c in candidates:
            weeks[week_start(c.day)].append(c)
        return weeks

    def _construct(self, ctx: _ScoringContext, candidates) -> list[CandidateSlot]:
        request = ctx.request
        selected: list[CandidateSlot] = []
        weeks = self._by_week(candidates)

        for week in sorted(weeks):
            taken = 0
            while taken < request.sessions_per_week and len(selected) < request.total_sessions:
                best: Optional[CandidateSlot] = None
                best_key: Optional[tuple] = None
                for candidate in weeks[week]:
                    if candidate in selected or not ctx.feasible(candidate, selected):
                        continue
                    key = (-ctx.score(candidate, selected), *candidate.sort_key)
                    if best_key is None or key < best_key:
                        best, best_key = candidate, key
                if best is None:
                    break
                selected.append(best)
                taken += 1
            if len(selected) >= request.total_sessions:
                break
        return selected

    def _improve(self, ctx: _ScoringContext, candidates, selected) -> tuple[list[CandidateSlot], int]:
        """First-improvement swap search, bounded by the iteration cap."""
        weeks = self._by_week(candidates)
        max_iterations = self.settings.optimization_max_iterations
        iterations = 0

        improved = True
        while improved and iterations < max_iterations:
            improved = False
            for current in sorted(selected, key=lambda c: c.sort_key):
                rest = [s for s in selected if s != current]
                for candidate in weeks[week_start(current.day)]:
                    if candidate in selected or not ctx.feasible(candidate, rest):
                        continue
                    trial = rest + [candidate]
                    before = ctx.local_objective(selected, current.day, candidate.day)
                    after = ctx.local_objective(trial, current.day, candidate.day)
                    if after > before + _IMPROVEMENT_EPSILON:
                        selected = trial
                        iterations += 1
                        improved = True
                        break
                if improved:
                    break

        return sorted(selected, key=lambda c: c.sort_key), iterations

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _build_sessions(self, ctx, request, selected) -> list[ScheduledSession]:
        return [
            ScheduledSession(
                student_subscription_id=request.student_subscription_id,
                student_id=request.student_id,
                therapist_id=slot.therapist_id,
                scheduled_date=slot.day,
                start_time=slot.start_time,
                end_time=slot.end_time,
                duration_minutes=request.session_duration,
                category=request.session_category,
                priority=request.priority_level,
                status=SessionStatus.SCHEDULED,
                room_id=request.room_id,
                equipment_ids=list(request.required_equipment),
                optimization_score=round(min(100.0, ctx.score(slot, selected) * 100), 2),
                generation_algorithm=ALGORITHM_NAME,
            )
            for slot in selected
        ]

    def _conflict_pass(
        self, sessions, existing, availability
    ) -> tuple[list[ScheduledSession], list[ScheduleConflict], list[SchedulingSuggestion], int]:
        found = self.detector.detect_batch_conflicts(
            sessions,
            BatchConflictOptions(check_within_batch=True),
            existing_sessions=existing,
            availability=availability,
        )

        kept: list[ScheduledSession] = []
        conflicts: list[ScheduleConflict] = []
        suggestions: list[SchedulingSuggestion] = []
        dropped = 0
        for session in sessions:
            session_conflicts = found.get(session.id, [])
            conflicts.extend(session_conflicts)
            if any(c.severity.is_blocking for c in session_conflicts):
                dropped += 1
                suggestions.extend(self.detector.generate_resolution_suggestions(
                    session_conflicts, session, existing + kept, availability,
                ))
                continue
            kept.append(session)
        return kept, conflicts, suggestions, dropped

    @staticmethod
    def _number(sessions: list[ScheduledSession]) -> list[ScheduledSession]:
        ordered = sorted(sessions, key=lambda s: (s.scheduled_date, s.start_time, s.therapist_id))
        for index, session in enumerate(ordered, start=1):
            session.session_number = f"S-{index:03d}"
        return ordered

    def _utilization(self, request, availability, existing, sessions) -> float:
        """Booked share (0-100) of the used therapists' available minutes."""
        used = {s.therapist_id for s in sessions}
        if not used:
            return 0.0

        available = 0
        for day in daterange(request.start_date, request.end_date):
            for therapist_id in used:
                windows, _ = day_windows(availability, therapist_id, day)
                available += sum(minutes_between(w.start_time, w.end_time) for w in windows)
        if available == 0:
            return 0.0

        in_range = [
            s for s in list(existing) + list(sessions)
            if s.therapist_id in used and request.start_date <= s.scheduled_date <= request.end_date
        ]
        booked = sum(minutes_between(s.start_time, s.end_time) for s in in_range)
        return round(min(100.0, booked / available * 100), 2)
