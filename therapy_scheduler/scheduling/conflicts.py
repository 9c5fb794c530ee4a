"""Conflict detection and resolution for therapy sessions."""

import logging
from collections import defaultdict
from datetime import date, time, timedelta
from typing import Iterable, Optional, Sequence

from therapy_scheduler.config import Settings, get_settings
from therapy_scheduler.scheduling.models import (
    AutoResolutionResult,
    BatchConflictOptions,
    ConflictSeverity,
    ConflictType,
    ScheduleConflict,
    ScheduledSession,
    SchedulingSuggestion,
    TherapistAvailability,
    TimeWindow,
)
from therapy_scheduler.scheduling.timeslots import (
    add_minutes,
    day_windows,
    has_entries,
    intervals_overlap,
    minutes_between,
    slot_starts,
    therapist_ids,
    to_minutes,
)

logger = logging.getLogger(__name__)

# Order among conflicts of equal severity.
_TYPE_RANK: dict[ConflictType, int] = {
    ConflictType.THERAPIST_DOUBLE_BOOKING: 0,
    ConflictType.THERAPIST_UNAVAILABLE: 1,
    ConflictType.STUDENT_DOUBLE_BOOKING: 2,
    ConflictType.CAPACITY_EXCEEDED: 3,
    ConflictType.TIME_CONSTRAINT: 4,
    ConflictType.ROOM_UNAVAILABLE: 5,
    ConflictType.EQUIPMENT_CONFLICT: 6,
    ConflictType.INSUFFICIENT_GAP: 7,
    ConflictType.NO_SLOT_AVAILABLE: 8,
}

_WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# Confidence attached to each kind of resolution suggestion.
_CONFIDENCE = {
    "alternative_therapist": 85,
    "earlier_time": 70,
    "later_time": 65,
    "next_available_day": 50,
}


def sort_conflicts(conflicts: Iterable[ScheduleConflict]) -> list[ScheduleConflict]:
    """Most severe first, then by conflict type."""
    return sorted(
        conflicts,
        key=lambda c: (-c.severity.rank, _TYPE_RANK[c.conflict_type]),
    )


class ConflictDetector:
    """Finds double bookings, availability breaches and resource clashes."""

    def __init__(
        self,
        business_start: time = time(8, 0),
        business_end: time = time(18, 0),
        max_sessions_per_day: int = 8,
        min_gap_minutes: int = 15,
        slot_step_minutes: int = 15,
        weekend_days: Sequence[int] = (5, 6),
    ) -> None:
        self.business_start = business_start
        self.business_end = business_end
        self.max_sessions_per_day = max_sessions_per_day
        self.min_gap_minutes = min_gap_minutes
        self.slot_step_minutes = slot_step_minutes
        self.weekend_days = set(weekend_days)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ConflictDetector":
        settings = settings or get_settings()
        return cls(
            business_start=time(settings.business_start_hour, 0),
            business_end=time(settings.business_end_hour, 0),
            max_sessions_per_day=settings.max_sessions_per_day,
            min_gap_minutes=settings.min_gap_minutes,
            slot_step_minutes=settings.slot_step_minutes,
            weekend_days=settings.weekend_days,
        )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_conflicts_for_session(
        self,
        session: ScheduledSession,
        existing_sessions: Sequence[ScheduledSession],
        availability: Optional[Sequence[TherapistAvailability]] = None,
        check_resources: bool = True,
    ) -> list[ScheduleConflict]:
        """Return every conflict *session* has against *existing_sessions*.

        Cancelled and no-show sessions neither raise nor receive conflicts.
        Availability checks run only when *availability* lists at least one
        entry for the session's therapist.
        """
        if not session.is_active:
            return []

        same_day = [
            s for s in existing_sessions
            if s.is_active and s.id != session.id and s.scheduled_date == session.scheduled_date
        ]
        therapist_day = [s for s in same_day if s.therapist_id == session.therapist_id]

        conflicts: list[ScheduleConflict] = []
        conflicts.extend(self._therapist_double_booking(session, therapist_day))
        conflicts.extend(self._student_double_booking(session, same_day))
        if availability and has_entries(availability, session.therapist_id):
            conflicts.extend(self._availability(session, availability))
        if check_resources:
            conflicts.extend(self._room(session, same_day))
            conflicts.extend(self._equipment(session, same_day))
        conflicts.extend(self._time_constraints(session))
        conflicts.extend(self._capacity(session, therapist_day))
        conflicts.extend(self._gaps(session, therapist_day))
        return sort_conflicts(conflicts)

    def detect_batch_conflicts(
        self,
        sessions: Sequence[ScheduledSession],
        options: Optional[BatchConflictOptions] = None,
        existing_sessions: Sequence[ScheduledSession] = (),
        availability: Optional[Sequence[TherapistAvailability]] = None,
    ) -> dict[str, list[ScheduleConflict]]:
        """Detect conflicts for every session in *sessions*.

        Returns a mapping with an entry (possibly empty) per input session.
        With ``check_within_batch`` the batch members are also checked
        against each other.
        """
        options = options or BatchConflictOptions()

        pool: dict[str, ScheduledSession] = {s.id: s for s in existing_sessions}
        if options.check_within_batch:
            pool.update({s.id: s for s in sessions})

        by_date: dict[date, list[ScheduledSession]] = defaultdict(list)
        for s in pool.values():
            by_date[s.scheduled_date].append(s)

        results: dict[str, list[ScheduleConflict]] = {}
        for session in sessions:
            results[session.id] = self.detect_conflicts_for_session(
                session,
                by_date.get(session.scheduled_date, []),
                availability,
                check_resources=options.include_resources,
            )

        total = sum(len(c) for c in results.values())
        logger.debug("Batch conflict check: %d sessions, %d conflicts", len(sessions), total)
        return results

    def is_slot_clear(
        self,
        session: ScheduledSession,
        existing_sessions: Sequence[ScheduledSession],
        availability: Optional[Sequence[TherapistAvailability]] = None,
    ) -> bool:
        """True when *session* raises nothing worse than a low conflict."""
        return all(
            c.severity == ConflictSeverity.LOW
            for c in self.detect_conflicts_for_session(session, existing_sessions, availability)
        )

    # ------------------------------------------------------------------
    # Individual detectors
    # ------------------------------------------------------------------

    def _conflict(self, session: ScheduledSession, conflict_type: ConflictType,
                  severity: ConflictSeverity, description: str, **extra) -> ScheduleConflict:
        return ScheduleConflict(
            conflict_type=conflict_type,
            severity=severity,
            session_id=session.id,
            therapist_id=session.therapist_id,
            student_id=session.student_id,
            conflict_date=session.scheduled_date,
            start_time=session.start_time,
            end_time=session.end_time,
            description=description,
            auto_resolvable=not severity.is_blocking,
            **extra,
        )

    def _therapist_double_booking(self, session, therapist_day):
        return [
            self._conflict(
                session,
                ConflictType.THERAPIST_DOUBLE_BOOKING,
                ConflictSeverity.HIGH,
                f"Therapist {session.therapist_id} is already booked "
                f"{other.start_time:%H:%M}-{other.end_time:%H:%M} on {session.scheduled_date}",
                conflicting_session_id=other.id,
            )
            for other in therapist_day
            if session.overlaps(other)
        ]

    def _student_double_booking(self, session, same_day):
        if not session.student_id:
            return []
        return [
            self._conflict(
                session,
                ConflictType.STUDENT_DOUBLE_BOOKING,
                ConflictSeverity.HIGH,
                f"Student {session.student_id} already has a session "
                f"{other.start_time:%H:%M}-{other.end_time:%H:%M}",
                conflicting_session_id=other.id,
            )
            for other in same_day
            if other.student_id == session.student_id and session.overlaps(other)
        ]

    def _availability(self, session, availability):
        day = session.scheduled_date
        windows, blocked = day_windows(availability, session.therapist_id, day)

        if not windows:
            return [self._conflict(
                session,
                ConflictType.THERAPIST_UNAVAILABLE,
                ConflictSeverity.HIGH,
                f"Therapist {session.therapist_id} is not available on "
                f"{_WEEKDAY_NAMES[day.weekday()]} {day}",
            )]

        conflicts = []
        for window in blocked:
            if intervals_overlap(session.start_time, session.end_time, window.start_time, window.end_time):
                conflicts.append(self._conflict(
                    session,
                    ConflictType.THERAPIST_UNAVAILABLE,
                    ConflictSeverity.HIGH,
                    f"Therapist {session.therapist_id} has time off "
                    f"{window.start_time:%H:%M}-{window.end_time:%H:%M}",
                ))

        inside = any(
            session.start_time >= w.start_time and session.end_time <= w.end_time
            for w in windows
        )
        if not inside:
            conflicts.append(self._conflict(
                session,
                ConflictType.THERAPIST_UNAVAILABLE,
                ConflictSeverity.MEDIUM,
                f"Session {session.start_time:%H:%M}-{session.end_time:%H:%M} is outside "
                f"therapist {session.therapist_id}'s availability",
            ))
        return conflicts

    def _room(self, session, same_day):
        if not session.room_id:
            return []
        for other in same_day:
            if other.room_id == session.room_id and session.overlaps(other):
                return [self._conflict(
                    session,
                    ConflictType.ROOM_UNAVAILABLE,
                    ConflictSeverity.MEDIUM,
                    f"Room {session.room_id} is occupied "
                    f"{other.start_time:%H:%M}-{other.end_time:%H:%M}",
                    conflicting_session_id=other.id,
                    room_id=session.room_id,
                )]
        return []

    def _equipment(self, session, same_day):
        conflicts = []
        for equipment_id in session.equipment_ids:
            for other in same_day:
                if equipment_id in other.equipment_ids and session.overlaps(other):
                    conflicts.append(self._conflict(
                        session,
                        ConflictType.EQUIPMENT_CONFLICT,
                        ConflictSeverity.LOW,
                        f"Equipment {equipment_id} is in use by session {other.id}",
                        conflicting_session_id=other.id,
                        equipment_id=equipment_id,
                    ))
                    break
        return conflicts

    def _time_constraints(self, session):
        conflicts = []
        actual = minutes_between(session.start_time, session.end_time)
        if actual != session.duration_minutes:
            conflicts.append(self._conflict(
                session,
                ConflictType.TIME_CONSTRAINT,
                ConflictSeverity.LOW,
                f"Session spans {actual} minutes but duration is {session.duration_minutes}",
            ))
        if session.start_time < self.business_start or session.end_time > self.business_end:
            conflicts.append(self._conflict(
                session,
                ConflictType.TIME_CONSTRAINT,
                ConflictSeverity.MEDIUM,
                f"Session is outside business hours "
                f"{self.business_start:%H:%M}-{self.business_end:%H:%M}",
            ))
        return conflicts

    def _capacity(self, session, therapist_day):
        if len(therapist_day) < self.max_sessions_per_day:
            return []
        return [self._conflict(
            session,
            ConflictType.CAPACITY_EXCEEDED,
            ConflictSeverity.HIGH,
            f"Therapist {session.therapist_id} already has {len(therapist_day)} sessions "
            f"on {session.scheduled_date} (max {self.max_sessions_per_day})",
        )]

    def _gaps(self, session, therapist_day):
        conflicts = []
        for other in therapist_day:
            if session.overlaps(other):
                continue
            if other.start_time >= session.end_time:
                gap = minutes_between(session.end_time, other.start_time)
            else:
                gap = minutes_between(other.end_time, session.start_time)
            if gap < self.min_gap_minutes:
                conflicts.append(self._conflict(
                    session,
                    ConflictType.INSUFFICIENT_GAP,
                    ConflictSeverity.LOW,
                    f"Only {gap} minutes between this session and session {other.id} "
                    f"(minimum {self.min_gap_minutes})",
                    conflicting_session_id=other.id,
                ))
        return conflicts

    # ------------------------------------------------------------------
    # Free slot search
    # ------------------------------------------------------------------

    def open_windows(
        self,
        therapist_id: str,
        day: date,
        availability: Optional[Sequence[TherapistAvailability]] = None,
    ) -> tuple[list[TimeWindow], list[TimeWindow]]:
        """Open and blocked windows, falling back to business hours on weekdays."""
        if availability and has_entries(availability, therapist_id):
            return day_windows(availability, therapist_id, day)
        if day.weekday() in self.weekend_days:
            return [], []
        return [TimeWindow(start_time=self.business_start, end_time=self.business_end)], []

    def candidate_starts(
        self,
        therapist_id: str,
        day: date,
        duration_minutes: int,
        availability: Optional[Sequence[TherapistAvailability]] = None,
    ) -> list[time]:
        windows, blocked = self.open_windows(therapist_id, day, availability)
        return slot_starts(
            windows,
            duration_minutes,
            self.slot_step_minutes,
            blocked=blocked,
            earliest=self.business_start,
            latest_end=self.business_end,
        )

    def find_free_slot(
        self,
        session: ScheduledSession,
        day: date,
        existing_sessions: Sequence[ScheduledSession],
        availability: Optional[Sequence[TherapistAvailability]] = None,
        preferred_start: Optional[time] = None,
        therapist_id: Optional[str] = None,
    ) -> Optional[ScheduledSession]:
        """First placement of *session* on *day* that is clear of medium+ conflicts.

        *preferred_start* is tried before the other candidate starts.
        """
        therapist_id = therapist_id or session.therapist_id
        starts = self.candidate_starts(therapist_id, day, session.duration_minutes, availability)
        if preferred_start is not None and preferred_start in starts:
            starts.remove(preferred_start)
            starts.insert(0, preferred_start)

        for start in starts:
            candidate = self._placed(session, day, start, therapist_id)
            if self.is_slot_clear(candidate, existing_sessions, availability):
                return candidate
        return None

    @staticmethod
    def _placed(session: ScheduledSession, day: date, start: time, therapist_id: str) -> ScheduledSession:
        return session.model_copy(update={
            "scheduled_date": day,
            "start_time": start,
            "end_time": add_minutes(start, session.duration_minutes),
            "therapist_id": therapist_id,
        })

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def generate_resolution_suggestions(
        self,
        conflicts: Sequence[ScheduleConflict],
        session: ScheduledSession,
        existing_sessions: Sequence[ScheduledSession],
        availability: Optional[Sequence[TherapistAvailability]] = None,
        max_suggestions: int = 5,
        search_days: int = 7,
    ) -> list[SchedulingSuggestion]:
        """Offer alternative placements that would clear *conflicts*."""
        if not conflicts:
            return []

        suggestions: list[SchedulingSuggestion] = []
        day = session.scheduled_date

        therapist_bound = any(
            c.conflict_type in (
                ConflictType.THERAPIST_DOUBLE_BOOKING,
                ConflictType.THERAPIST_UNAVAILABLE,
                ConflictType.CAPACITY_EXCEEDED,
            )
            for c in conflicts
        )
        if therapist_bound and availability:
            for other_id in therapist_ids(availability):
                if other_id == session.therapist_id:
                    continue
                candidate = self._placed(session, day, session.start_time, other_id)
                if self.is_slot_clear(candidate, existing_sessions, availability):
                    suggestions.append(self._suggestion(
                        session, candidate, "alternative_therapist",
                        f"Assign therapist {other_id} at the same time",
                    ))
                    break

        starts = self.candidate_starts(session.therapist_id, day, session.duration_minutes, availability)
        earlier = [s for s in starts if s < session.start_time]
        later = [s for s in starts if s > session.start_time]

        for start in reversed(earlier):
            candidate = self._placed(session, day, start, session.therapist_id)
            if self.is_slot_clear(candidate, existing_sessions, availability):
                suggestions.append(self._suggestion(
                    session, candidate, "earlier_time", f"Move earlier to {start:%H:%M}",
                ))
                break

        for start in later:
            candidate = self._placed(session, day, start, session.therapist_id)
            if self.is_slot_clear(candidate, existing_sessions, availability):
                suggestions.append(self._suggestion(
                    session, candidate, "later_time", f"Move later to {start:%H:%M}",
                ))
                break

        for offset in range(1, search_days + 1):
            next_day = day + timedelta(days=offset)
            candidate = self.find_free_slot(
                session, next_day, existing_sessions, availability,
                preferred_start=session.start_time,
            )
            if candidate is not None:
                suggestions.append(self._suggestion(
                    session, candidate, "next_available_day",
                    f"Move to {next_day} at {candidate.start_time:%H:%M}",
                ))
                break

        unique: dict[tuple, SchedulingSuggestion] = {}
        for s in sorted(suggestions, key=lambda s: -s.confidence):
            unique.setdefault((s.therapist_id, s.suggested_date, s.start_time), s)
        return list(unique.values())[:max_suggestions]

    @staticmethod
    def _suggestion(session, candidate, kind, description) -> SchedulingSuggestion:
        return SchedulingSuggestion(
            session_id=session.id,
            suggestion_type=kind,
            description=description,
            therapist_id=candidate.therapist_id,
            suggested_date=candidate.scheduled_date,
            start_time=candidate.start_time,
            end_time=candidate.end_time,
            confidence=_CONFIDENCE[kind],
        )

    def attempt_auto_resolution(
        self,
        conflict: ScheduleConflict,
        session: ScheduledSession,
        existing_sessions: Sequence[ScheduledSession],
        availability: Optional[Sequence[TherapistAvailability]] = None,
        max_time_shift_minutes: int = 60,
    ) -> AutoResolutionResult:
        """Shift a session within *max_time_shift_minutes* to clear a minor conflict.

        High and critical conflicts are never resolved automatically.
        """
        if conflict.severity.is_blocking:
            return AutoResolutionResult(
                resolved=False,
                status="requires_manual_intervention",
                message=f"{conflict.severity.value} severity conflicts require manual resolution",
            )

        base = to_minutes(session.start_time)
        step = self.slot_step_minutes
        for distance in range(step, max_time_shift_minutes + 1, step):
            for offset in (-distance, distance):
                start_min = base + offset
                end_min = start_min + session.duration_minutes
                if start_min < to_minutes(self.business_start) or end_min > to_minutes(self.business_end):
                    continue
                start = add_minutes(session.start_time, offset)
                candidate = self._placed(session, session.scheduled_date, start, session.therapist_id)
                remaining = self.detect_conflicts_for_session(candidate, existing_sessions, availability)
                if any(c.severity != ConflictSeverity.LOW for c in remaining):
                    continue
                if any(c.conflict_type == conflict.conflict_type for c in remaining):
                    continue
                logger.info(
                    "Auto-resolved %s for session %s by shifting %+d minutes",
                    conflict.conflict_type.value, session.id, offset,
                )
                return AutoResolutionResult(
                    resolved=True,
                    status="resolved",
                    message=f"Shifted session by {offset:+d} minutes",
                    updated_session=candidate,
                )

        return AutoResolutionResult(
            resolved=False,
            status="no_resolution_found",
            message=f"No conflict-free slot within {max_time_shift_minutes} minutes",
        )
