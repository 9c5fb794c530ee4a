"""Tests for schedule generation."""

import json
from datetime import time, timedelta

import pytest

from therapy_scheduler.config import Settings
from therapy_scheduler.observability.logger import ObservabilityLogger
from therapy_scheduler.scheduling.generator import (
    ALGORITHM_NAME,
    SchedulingEngine,
    validate_scheduling_request,
)
from therapy_scheduler.scheduling.models import (
    OptimizationAction,
    OptimizationActionType,
    OptimizationRule,
    TherapistAvailability,
    TimeWindow,
)
from therapy_scheduler.scheduling.timeslots import week_start, window_distance

OTHER_THERAPIST_ID = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"


@pytest.fixture
def engine():
    return SchedulingEngine(settings=Settings())


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_valid_request(self, scheduling_request):
        assert validate_scheduling_request(scheduling_request) == []

    def test_collects_every_error(self, scheduling_request):
        bad = scheduling_request.model_copy(update={
            "student_subscription_id": "",
            "end_date": scheduling_request.start_date,
            "total_sessions": 0,
        })

        errors = validate_scheduling_request(bad)

        assert "student_subscription_id is required" in errors
        assert "start_date must be before end_date" in errors
        assert "total_sessions must be greater than 0" in errors

    def test_invalid_request_is_not_scheduled(self, engine, scheduling_request, availability):
        bad = scheduling_request.model_copy(update={"end_date": scheduling_request.start_date})

        result = engine.generate_schedule(bad, availability)

        assert result.success is False
        assert result.algorithm_used == "validation_failed"
        assert result.generated_sessions == []
        assert "start_date must be before end_date" in result.warnings
        assert result.unscheduled_sessions == 8


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class TestGenerateSchedule:
    def test_full_program(self, engine, scheduling_request, availability):
        result = engine.generate_schedule(scheduling_request, availability)

        sessions = result.generated_sessions
        assert result.success is True
        assert result.algorithm_used == ALGORITHM_NAME
        assert len(sessions) == 8
        assert result.unscheduled_sessions == 0
        assert [s.session_number for s in sessions] == [f"S-{i:03d}" for i in range(1, 9)]
        assert sessions == sorted(sessions, key=lambda s: (s.scheduled_date, s.start_time))

        for s in sessions:
            assert scheduling_request.start_date <= s.scheduled_date <= scheduling_request.end_date
            assert s.scheduled_date.weekday() < 5
            assert time(9, 0) <= s.start_time and s.end_time <= time(17, 0)
            assert s.duration_minutes == 45
            assert s.student_subscription_id == scheduling_request.student_subscription_id
            assert 0 <= s.optimization_score <= 100

        per_week = {}
        for s in sessions:
            per_week.setdefault(week_start(s.scheduled_date), []).append(s)
        assert all(len(week) <= 2 for week in per_week.values())
        assert len({s.scheduled_date for s in sessions}) == 8

    def test_no_availability(self, engine, scheduling_request):
        result = engine.generate_schedule(scheduling_request, [])

        assert result.success is False
        assert "No available slots matched the request constraints" in result.warnings
        assert "Only 0 of 8 sessions could be scheduled" in result.warnings

    def test_partial_program_warns(self, engine, scheduling_request, availability):
        short = scheduling_request.model_copy(update={
            "end_date": scheduling_request.start_date + timedelta(days=13),
            "total_sessions": 10,
        })

        result = engine.generate_schedule(short, availability)

        assert result.success is True
        assert len(result.generated_sessions) == 4
        assert result.unscheduled_sessions == 6
        assert "Only 4 of 10 sessions could be scheduled" in result.warnings

    def test_avoid_days(self, engine, scheduling_request, availability):
        request = scheduling_request.model_copy(update={"avoid_days": [0, 1, 2]})

        result = engine.generate_schedule(request, availability)

        assert result.generated_sessions
        assert {s.scheduled_date.weekday() for s in result.generated_sessions} <= {3, 4}

    def test_preferred_days(self, engine, scheduling_request, availability):
        request = scheduling_request.model_copy(update={
            "preferred_days": [1, 3],
            "flexibility_score": 0.0,
        })

        result = engine.generate_schedule(request, availability)

        assert len(result.generated_sessions) == 8
        assert {s.scheduled_date.weekday() for s in result.generated_sessions} == {1, 3}
        assert result.preference_match_score == 100.0

    def test_preferred_times(self, engine, scheduling_request, availability):
        request = scheduling_request.model_copy(update={
            "preferred_times": [TimeWindow(start_time=time(14, 0), end_time=time(15, 0))],
        })

        result = engine.generate_schedule(request, availability)

        for s in result.generated_sessions:
            assert s.start_time >= time(14, 0)
            assert s.end_time <= time(15, 0)

    def test_avoid_times(self, engine, scheduling_request, availability):
        request = scheduling_request.model_copy(update={
            "avoid_times": [TimeWindow(start_time=time(9, 0), end_time=time(12, 0))],
        })

        result = engine.generate_schedule(request, availability)

        assert result.generated_sessions
        assert all(s.start_time >= time(12, 0) for s in result.generated_sessions)

    def test_preferred_therapist(self, engine, scheduling_request, two_therapist_availability):
        request = scheduling_request.model_copy(update={"preferred_therapist_id": OTHER_THERAPIST_ID})

        result = engine.generate_schedule(request, two_therapist_availability)

        assert {s.therapist_id for s in result.generated_sessions} == {OTHER_THERAPIST_ID}

    def test_existing_sessions_are_avoided(self, engine, scheduling_request, availability, make_session):
        monday = scheduling_request.start_date
        existing = [
            make_session(
                scheduled_date=monday + timedelta(days=offset),
                start_time=time(9, 0),
                end_time=time(17, 0),
                duration_minutes=480,
                student_id="student-2",
                student_subscription_id=None,
            )
            for offset in range(5)
        ]

        result = engine.generate_schedule(scheduling_request, availability, existing)

        first_week = [s for s in result.generated_sessions if s.scheduled_date < monday + timedelta(days=7)]
        assert first_week == []
        assert len(result.generated_sessions) == 6

    def test_specific_date_replaces_recurring(self, engine, scheduling_request, availability):
        monday = scheduling_request.start_date
        request = scheduling_request.model_copy(update={
            "end_date": monday + timedelta(days=1),
            "total_sessions": 1,
            "sessions_per_week": 1,
            "preferred_days": [0],
            "flexibility_score": 0.0,
        })
        one_off = TherapistAvailability(
            therapist_id=availability[0].therapist_id,
            specific_date=monday,
            start_time=time(13, 0),
            end_time=time(14, 0),
        )

        result = engine.generate_schedule(request, availability + [one_off])

        assert len(result.generated_sessions) == 1
        session = result.generated_sessions[0]
        assert session.scheduled_date == monday
        assert session.start_time == time(13, 0)

    def test_max_sessions_per_day(self, engine, scheduling_request, availability):
        request = scheduling_request.model_copy(update={
            "end_date": scheduling_request.start_date + timedelta(days=1),
            "total_sessions": 4,
            "sessions_per_week": 4,
            "max_sessions_per_day": 2,
        })

        result = engine.generate_schedule(request, availability)

        assert len(result.generated_sessions) == 4
        per_day = {}
        for s in result.generated_sessions:
            per_day[s.scheduled_date] = per_day.get(s.scheduled_date, 0) + 1
        assert set(per_day.values()) == {2}

    def test_rules_can_reject_sessions(self, engine, scheduling_request, availability):
        reject_all = OptimizationRule(
            name="No therapy sessions",
            actions=[OptimizationAction(
                action_type=OptimizationActionType.REJECT,
                target_filter={"category": "therapy"},
            )],
        )

        result = engine.generate_schedule(scheduling_request, availability, rules=[reject_all])

        assert result.generated_sessions == []
        assert result.success is False

    def test_rules_score_the_schedule(self, engine, scheduling_request, availability):
        boost = OptimizationRule(
            name="Boost",
            actions=[OptimizationAction(action_type=OptimizationActionType.BOOST_SCORE, score_impact=20)],
        )

        result = engine.generate_schedule(scheduling_request, availability, rules=[boost])

        assert result.success is True
        assert result.optimization_score > 0
        assert len(result.generated_sessions) == 8

    def test_utilization(self, engine, scheduling_request, availability):
        result = engine.generate_schedule(scheduling_request, availability)

        # 8 x 45 minutes over 20 working days of 8 hours
        assert result.therapist_utilization == round(8 * 45 / (20 * 480) * 100, 2)


class TestScoring:
    window = TimeWindow(start_time=time(14, 0), end_time=time(15, 0))

    def test_slot_inside_window(self):
        assert window_distance(time(14, 0), time(14, 45), self.window) == 0
        assert window_distance(time(14, 15), time(15, 0), self.window) == 0

    def test_adjacent_slots_are_outside(self):
        assert window_distance(time(13, 15), time(14, 0), self.window) == 45
        assert window_distance(time(15, 0), time(15, 45), self.window) == 45

    def test_partial_overlap(self):
        assert window_distance(time(13, 30), time(14, 15), self.window) == 30
        assert window_distance(time(14, 30), time(15, 15), self.window) == 15

    def test_back_to_back_with_existing_session(self, engine, scheduling_request, availability, make_session):
        monday = scheduling_request.start_date
        wednesday = monday + timedelta(days=2)
        request = scheduling_request.model_copy(update={
            "end_date": monday + timedelta(days=4),
            "total_sessions": 1,
            "sessions_per_week": 1,
        })
        existing = [make_session(
            scheduled_date=wednesday,
            start_time=time(13, 0),
            student_id="student-2",
            student_subscription_id=None,
        )]

        result = engine.generate_schedule(request, availability, existing)

        assert len(result.generated_sessions) == 1
        session = result.generated_sessions[0]
        assert session.scheduled_date == wednesday
        assert session.start_time == time(12, 15)


class TestGenerationTelemetry:
    def test_engine_run_is_logged(self, tmp_path, scheduling_request, availability):
        obs = ObservabilityLogger(log_dir=tmp_path, enabled=True)
        engine = SchedulingEngine(settings=Settings(), observability=obs)

        engine.generate_schedule(scheduling_request, availability)

        lines = (tmp_path / "engine_runs.jsonl").read_text().strip().split("\n")
        event = json.loads(lines[0])
        assert event["engine"] == "generate_schedule"
        assert event["event_type"] == "engine_run_success"
        assert event["input_count"] == 8
        assert event["output_count"] == 8
        assert event["success"] is True
