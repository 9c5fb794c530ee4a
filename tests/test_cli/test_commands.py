"""Tests for CLI commands."""

import json
from datetime import date, timedelta

import pytest
from typer.testing import CliRunner

from therapy_scheduler.cli.commands import app

runner = CliRunner()

THERAPIST_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
MONDAY = date(2026, 3, 2)


@pytest.fixture
def request_file(tmp_path):
    """Scheduling request for four weeks, two sessions a week."""
    path = tmp_path / "request.json"
    path.write_text(json.dumps({
        "student_subscription_id": "sub-1",
        "start_date": MONDAY.isoformat(),
        "end_date": (MONDAY + timedelta(days=27)).isoformat(),
        "total_sessions": 8,
        "sessions_per_week": 2,
    }))
    return path


@pytest.fixture
def availability_file(tmp_path):
    path = tmp_path / "availability.json"
    path.write_text(json.dumps([
        {"therapist_id": THERAPIST_ID, "day_of_week": dow, "start_time": "09:00", "end_time": "17:00"}
        for dow in range(5)
    ]))
    return path


def _session(start: str, end: str, student: str) -> dict:
    return {
        "therapist_id": THERAPIST_ID,
        "student_id": student,
        "scheduled_date": MONDAY.isoformat(),
        "start_time": start,
        "end_time": end,
        "duration_minutes": 45,
    }


class TestVersionCommand:
    """Tests for version command."""

    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "Therapy Scheduler v0.1.0" in result.output


class TestGenerateCommand:
    """Tests for generate command."""

    def test_generate_table(self, request_file, availability_file):
        result = runner.invoke(app, ["generate", str(request_file), "--availability", str(availability_file)])

        assert result.exit_code == 0
        assert "Schedule Generation" in result.output
        assert "Scheduled" in result.output

    def test_generate_json(self, request_file, availability_file):
        result = runner.invoke(
            app, ["generate", str(request_file), "-a", str(availability_file), "--json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["success"] is True
        assert len(data["generated_sessions"]) == 8

    def test_generate_without_availability_fails(self, request_file, tmp_path):
        empty = tmp_path / "empty.json"
        empty.write_text("[]")

        result = runner.invoke(app, ["generate", str(request_file), "-a", str(empty)])

        assert result.exit_code == 1
        assert "Failed" in result.output

    def test_missing_file(self, availability_file, tmp_path):
        result = runner.invoke(app, ["generate", str(tmp_path / "nope.json"), "-a", str(availability_file)])

        assert result.exit_code == 1
        assert "file not found" in result.output

    def test_invalid_json(self, availability_file, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")

        result = runner.invoke(app, ["generate", str(broken), "-a", str(availability_file)])

        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_availability_must_be_a_list(self, request_file, tmp_path):
        obj = tmp_path / "obj.json"
        obj.write_text("{}")

        result = runner.invoke(app, ["generate", str(request_file), "-a", str(obj)])

        assert result.exit_code == 1
        assert "must contain a JSON list" in result.output


class TestConflictsCommand:
    def test_no_conflicts(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps([_session("09:00", "09:45", "a"), _session("13:00", "13:45", "b")]))

        result = runner.invoke(app, ["conflicts", str(path)])

        assert result.exit_code == 0
        assert "No conflicts in 2 sessions." in result.output

    def test_double_booking_json(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps([_session("09:00", "09:45", "a"), _session("09:30", "10:15", "b")]))

        result = runner.invoke(app, ["conflicts", str(path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        types = {c["conflict_type"] for found in data.values() for c in found}
        assert "therapist_double_booking" in types


class TestEndDateCommand:
    def test_calendar_days(self):
        result = runner.invoke(
            app, ["end-date", "--start", "2026-01-01", "--end", "2026-03-31", "--freeze-days", "10"]
        )

        assert result.exit_code == 0
        assert "New end date: 2026-04-10" in result.output

    def test_business_days(self):
        result = runner.invoke(app, [
            "end-date", "--start", "2026-01-01", "--end", "2026-03-31", "-f", "10", "--exclude-weekends",
        ])

        assert "New end date: 2026-04-14" in result.output

    def test_invalid_date(self):
        result = runner.invoke(app, ["end-date", "--start", "soon", "--end", "2026-03-31", "-f", "3"])

        assert result.exit_code == 1
        assert "Invalid date" in result.output


class TestTelemetryCommand:
    def test_no_events(self):
        result = runner.invoke(app, ["telemetry"])

        assert result.exit_code == 0
        assert "No engine events recorded." in result.output

    def test_stats(self, tmp_path):
        log_dir = tmp_path / "logs"
        log_dir.mkdir(exist_ok=True)
        events = [
            {"event_type": "engine_run_success", "engine": "generate_schedule", "duration_ms": 10.0},
            {"event_type": "engine_run_error", "engine": "bulk_reschedule", "duration_ms": 30.0},
        ]
        (log_dir / "engine_runs.jsonl").write_text("\n".join(json.dumps(e) for e in events) + "\n")

        result = runner.invoke(app, ["telemetry", "--type", "engine"])

        assert result.exit_code == 0
        assert "Engine Events" in result.output
        assert "50.0%" in result.output
        assert "20.0ms" in result.output
