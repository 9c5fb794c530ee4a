"""Tests for the conflict detector."""

from datetime import time, timedelta

import pytest

from therapy_scheduler.config import Settings
from therapy_scheduler.scheduling.conflicts import ConflictDetector, sort_conflicts
from therapy_scheduler.scheduling.models import (
    BatchConflictOptions,
    ConflictSeverity,
    ConflictType,
    ScheduleConflict,
    SessionStatus,
    TherapistAvailability,
)

THERAPIST_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
OTHER_THERAPIST_ID = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"


@pytest.fixture
def detector():
    return ConflictDetector()


# ---------------------------------------------------------------------------
# Single-session detection
# ---------------------------------------------------------------------------

class TestDetectConflictsForSession:
    def test_therapist_double_booking(self, detector, make_session):
        existing = make_session()
        session = make_session(start_time=time(10, 15), student_id="student-2")

        conflicts = detector.detect_conflicts_for_session(session, [existing])

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.THERAPIST_DOUBLE_BOOKING
        assert conflicts[0].severity == ConflictSeverity.HIGH
        assert conflicts[0].conflicting_session_id == existing.id
        assert conflicts[0].auto_resolvable is False

    def test_student_double_booking_across_therapists(self, detector, make_session):
        existing = make_session()
        session = make_session(therapist_id=OTHER_THERAPIST_ID, start_time=time(10, 15))

        conflicts = detector.detect_conflicts_for_session(session, [existing])

        assert [c.conflict_type for c in conflicts] == [ConflictType.STUDENT_DOUBLE_BOOKING]

    def test_cancelled_sessions_are_ignored(self, detector, make_session):
        cancelled = make_session(status=SessionStatus.CANCELLED)
        session = make_session(student_id="student-2")
        assert detector.detect_conflicts_for_session(session, [cancelled]) == []

        no_show = make_session(status=SessionStatus.NO_SHOW)
        assert detector.detect_conflicts_for_session(no_show, [make_session()]) == []

    def test_unavailable_weekday(self, detector, make_session, availability):
        saturday = make_session().scheduled_date + timedelta(days=5)
        session = make_session(scheduled_date=saturday)

        conflicts = detector.detect_conflicts_for_session(session, [], availability)

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.THERAPIST_UNAVAILABLE
        assert conflicts[0].severity == ConflictSeverity.HIGH
        assert "Saturday" in conflicts[0].description

    def test_partially_outside_availability(self, detector, make_session, availability):
        session = make_session(start_time=time(16, 30))

        conflicts = detector.detect_conflicts_for_session(session, [], availability)

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.THERAPIST_UNAVAILABLE
        assert conflicts[0].severity == ConflictSeverity.MEDIUM
        assert conflicts[0].auto_resolvable is True

    def test_time_off_blocks_window(self, detector, make_session, availability):
        session = make_session(start_time=time(12, 0))
        time_off = TherapistAvailability(
            therapist_id=THERAPIST_ID,
            specific_date=session.scheduled_date,
            start_time=time(12, 0),
            end_time=time(13, 0),
            is_time_off=True,
        )

        conflicts = detector.detect_conflicts_for_session(session, [], availability + [time_off])

        assert len(conflicts) == 1
        assert conflicts[0].severity == ConflictSeverity.HIGH
        assert "time off" in conflicts[0].description

    def test_availability_skipped_for_therapist_without_entries(self, detector, make_session, availability):
        session = make_session(therapist_id=OTHER_THERAPIST_ID)
        assert detector.detect_conflicts_for_session(session, [], availability) == []

    def test_room_conflict(self, detector, make_session):
        existing = make_session(therapist_id=OTHER_THERAPIST_ID, student_id="student-2", room_id="R1")
        session = make_session(room_id="R1")

        conflicts = detector.detect_conflicts_for_session(session, [existing])

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.ROOM_UNAVAILABLE
        assert conflicts[0].severity == ConflictSeverity.MEDIUM
        assert conflicts[0].room_id == "R1"

    def test_resource_checks_can_be_disabled(self, detector, make_session):
        existing = make_session(therapist_id=OTHER_THERAPIST_ID, student_id="student-2", room_id="R1")
        session = make_session(room_id="R1")

        assert detector.detect_conflicts_for_session(session, [existing], check_resources=False) == []

    def test_equipment_conflict(self, detector, make_session):
        existing = make_session(
            therapist_id=OTHER_THERAPIST_ID, student_id="student-2", equipment_ids=["bike"]
        )
        session = make_session(equipment_ids=["bike", "mat"])

        conflicts = detector.detect_conflicts_for_session(session, [existing])

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.EQUIPMENT_CONFLICT
        assert conflicts[0].severity == ConflictSeverity.LOW
        assert conflicts[0].equipment_id == "bike"

    def test_insufficient_gap(self, detector, make_session):
        existing = make_session()
        session = make_session(start_time=time(10, 50))

        conflicts = detector.detect_conflicts_for_session(session, [existing])

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.INSUFFICIENT_GAP
        assert conflicts[0].severity == ConflictSeverity.LOW
        assert "Only 5 minutes" in conflicts[0].description

    def test_capacity_exceeded(self, make_session):
        detector = ConflictDetector(max_sessions_per_day=2, min_gap_minutes=0)
        existing = [make_session(start_time=time(9, 0)), make_session(start_time=time(11, 0))]
        session = make_session(start_time=time(14, 0))

        conflicts = detector.detect_conflicts_for_session(session, existing)

        assert [c.conflict_type for c in conflicts] == [ConflictType.CAPACITY_EXCEEDED]
        assert conflicts[0].severity == ConflictSeverity.HIGH

    def test_outside_business_hours(self, detector, make_session):
        session = make_session(start_time=time(7, 0))

        conflicts = detector.detect_conflicts_for_session(session, [])

        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.TIME_CONSTRAINT
        assert conflicts[0].severity == ConflictSeverity.MEDIUM

    def test_duration_mismatch(self, detector, make_session):
        session = make_session(end_time=time(11, 0))

        conflicts = detector.detect_conflicts_for_session(session, [])

        assert len(conflicts) == 1
        assert conflicts[0].severity == ConflictSeverity.LOW
        assert "spans 60 minutes" in conflicts[0].description

    def test_from_settings(self):
        detector = ConflictDetector.from_settings(
            Settings(max_sessions_per_day=3, business_start_hour=7, min_gap_minutes=5)
        )
        assert detector.max_sessions_per_day == 3
        assert detector.business_start == time(7, 0)
        assert detector.min_gap_minutes == 5


class TestSortConflicts:
    def test_severity_then_type(self):
        def conflict(kind, severity):
            return ScheduleConflict(conflict_type=kind, severity=severity, description=kind.value)

        ordered = sort_conflicts([
            conflict(ConflictType.INSUFFICIENT_GAP, ConflictSeverity.LOW),
            conflict(ConflictType.STUDENT_DOUBLE_BOOKING, ConflictSeverity.HIGH),
            conflict(ConflictType.ROOM_UNAVAILABLE, ConflictSeverity.MEDIUM),
            conflict(ConflictType.THERAPIST_DOUBLE_BOOKING, ConflictSeverity.HIGH),
        ])

        assert [c.conflict_type for c in ordered] == [
            ConflictType.THERAPIST_DOUBLE_BOOKING,
            ConflictType.STUDENT_DOUBLE_BOOKING,
            ConflictType.ROOM_UNAVAILABLE,
            ConflictType.INSUFFICIENT_GAP,
        ]


# ---------------------------------------------------------------------------
# Batch detection
# ---------------------------------------------------------------------------

class TestBatchConflicts:
    def test_checks_batch_members_against_each_other(self, detector, make_session):
        a = make_session()
        b = make_session(start_time=time(10, 15), student_id="student-2")

        results = detector.detect_batch_conflicts([a, b])

        assert set(results) == {a.id, b.id}
        assert results[a.id][0].conflicting_session_id == b.id
        assert results[b.id][0].conflicting_session_id == a.id

    def test_within_batch_check_can_be_disabled(self, detector, make_session):
        a = make_session()
        b = make_session(start_time=time(10, 15), student_id="student-2")

        results = detector.detect_batch_conflicts(
            [a, b], BatchConflictOptions(check_within_batch=False)
        )

        assert results == {a.id: [], b.id: []}

    def test_against_existing_sessions(self, detector, make_session):
        existing = make_session()
        session = make_session(start_time=time(10, 30), student_id="student-2")

        results = detector.detect_batch_conflicts([session], existing_sessions=[existing])

        assert results[session.id][0].conflict_type == ConflictType.THERAPIST_DOUBLE_BOOKING


# ---------------------------------------------------------------------------
# Free slot search
# ---------------------------------------------------------------------------

class TestFreeSlots:
    def test_is_slot_clear_tolerates_low_conflicts(self, detector, make_session):
        existing = make_session()
        assert detector.is_slot_clear(make_session(start_time=time(10, 50)), [existing])
        assert not detector.is_slot_clear(make_session(start_time=time(10, 15)), [existing])

    def test_find_free_slot_skips_booked_time(self, detector, make_session, availability):
        existing = make_session(start_time=time(9, 0))
        session = make_session(student_id="student-2")

        placed = detector.find_free_slot(session, session.scheduled_date, [existing], availability)

        assert placed is not None
        assert placed.start_time == time(9, 45)
        assert placed.end_time == time(10, 30)
        assert placed.id == session.id

    def test_find_free_slot_prefers_given_start(self, detector, make_session, availability):
        session = make_session()
        placed = detector.find_free_slot(
            session, session.scheduled_date, [], availability, preferred_start=time(14, 0)
        )
        assert placed.start_time == time(14, 0)

    def test_find_free_slot_with_other_therapist(self, detector, make_session, two_therapist_availability):
        session = make_session()
        placed = detector.find_free_slot(
            session, session.scheduled_date, [], two_therapist_availability,
            therapist_id=OTHER_THERAPIST_ID,
        )
        assert placed.therapist_id == OTHER_THERAPIST_ID

    def test_business_hours_fallback(self, detector, make_session):
        session = make_session()
        weekday = detector.find_free_slot(session, session.scheduled_date, [])
        weekend = detector.find_free_slot(session, session.scheduled_date + timedelta(days=5), [])

        assert weekday.start_time == time(8, 0)
        assert weekend is None


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolution:
    def test_suggestions_ranked_by_confidence(self, detector, make_session, two_therapist_availability):
        existing = make_session(student_id="student-2")
        session = make_session()
        conflicts = detector.detect_conflicts_for_session(session, [existing], two_therapist_availability)

        suggestions = detector.generate_resolution_suggestions(
            conflicts, session, [existing], two_therapist_availability
        )

        assert [s.suggestion_type for s in suggestions] == [
            "alternative_therapist",
            "earlier_time",
            "later_time",
            "next_available_day",
        ]
        assert [s.confidence for s in suggestions] == [85, 70, 65, 50]
        assert suggestions[0].therapist_id == OTHER_THERAPIST_ID
        assert suggestions[1].start_time == time(9, 15)
        assert suggestions[2].start_time == time(10, 45)
        assert suggestions[3].suggested_date == session.scheduled_date + timedelta(days=1)

    def test_max_suggestions(self, detector, make_session, two_therapist_availability):
        existing = make_session(student_id="student-2")
        session = make_session()
        conflicts = detector.detect_conflicts_for_session(session, [existing], two_therapist_availability)

        suggestions = detector.generate_resolution_suggestions(
            conflicts, session, [existing], two_therapist_availability, max_suggestions=2
        )

        assert len(suggestions) == 2

    def test_no_conflicts_no_suggestions(self, detector, make_session, availability):
        assert detector.generate_resolution_suggestions([], make_session(), [], availability) == []

    def test_blocking_conflicts_need_manual_resolution(self, detector, make_session):
        existing = make_session(student_id="student-2")
        session = make_session()
        conflict = detector.detect_conflicts_for_session(session, [existing])[0]

        result = detector.attempt_auto_resolution(conflict, session, [existing])

        assert result.resolved is False
        assert result.status == "requires_manual_intervention"

    def test_auto_resolution_shifts_session(self, detector, make_session):
        existing = make_session(therapist_id=OTHER_THERAPIST_ID, student_id="student-2", room_id="R1")
        session = make_session(room_id="R1")
        conflict = detector.detect_conflicts_for_session(session, [existing])[0]

        result = detector.attempt_auto_resolution(conflict, session, [existing])

        assert result.resolved is True
        assert result.status == "resolved"
        assert result.updated_session.start_time == time(9, 15)
        assert result.message == "Shifted session by -45 minutes"

    def test_auto_resolution_gives_up_within_shift_limit(self, detector, make_session):
        existing = make_session(therapist_id=OTHER_THERAPIST_ID, student_id="student-2", room_id="R1")
        session = make_session(room_id="R1")
        conflict = detector.detect_conflicts_for_session(session, [existing])[0]

        result = detector.attempt_auto_resolution(conflict, session, [existing], max_time_shift_minutes=30)

        assert result.resolved is False
        assert result.status == "no_resolution_found"
