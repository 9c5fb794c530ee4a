"""CLI commands for the therapy scheduler."""

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from therapy_scheduler.config import get_settings

app = typer.Typer(
    name="therapy-scheduler",
    help="Therapy session scheduling and rescheduling engine",
    add_completion=False,
)
console = Console()

_SEVERITY_COLORS = {"critical": "red", "high": "red", "medium": "yellow", "low": "white"}


def _load_json(path: Optional[Path], label: str) -> Any:
    if path is None:
        return None
    if not path.exists():
        console.print(f"[red]{label} file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {label.lower()} file {path}: {e}[/red]")
        raise typer.Exit(1)


def _load_list(path: Optional[Path], label: str, model) -> list:
    data = _load_json(path, label)
    if data is None:
        return []
    if not isinstance(data, list):
        console.print(f"[red]{label} file must contain a JSON list[/red]")
        raise typer.Exit(1)
    return [model.model_validate(item) for item in data]


@app.command()
def generate(
    request_file: Path = typer.Argument(..., help="JSON file with the scheduling request"),
    availability_file: Path = typer.Option(
        ..., "--availability", "-a", help="JSON list of therapist availability entries"
    ),
    existing_file: Optional[Path] = typer.Option(
        None, "--existing", "-e", help="JSON list of sessions already on the calendar"
    ),
    rules_file: Optional[Path] = typer.Option(
        None, "--rules", "-r", help="JSON list of optimization rules"
    ),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Generate a session program from a request file."""
    from therapy_scheduler.observability.logger import get_observability_logger
    from therapy_scheduler.scheduling.generator import SchedulingEngine
    from therapy_scheduler.scheduling.models import (
        OptimizationRule,
        ScheduledSession,
        SchedulingRequest,
        TherapistAvailability,
    )

    request = SchedulingRequest.model_validate(_load_json(request_file, "Request"))
    availability = _load_list(availability_file, "Availability", TherapistAvailability)
    existing = _load_list(existing_file, "Existing sessions", ScheduledSession)
    rules = _load_list(rules_file, "Rules", OptimizationRule)

    settings = get_settings()
    observability = get_observability_logger() if settings.observability_enabled else None
    engine = SchedulingEngine(settings=settings, observability=observability)
    result = engine.generate_schedule(request, availability, existing, rules or None)

    if output_json:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _display_result(result)

    if not result.success:
        raise typer.Exit(1)


def _display_result(result):
    status = "[green]Scheduled[/green]" if result.success else "[red]Failed[/red]"
    console.print(Panel(
        f"{status}: {len(result.generated_sessions)} sessions, "
        f"{result.unscheduled_sessions} unscheduled\n"
        f"Optimization score: {result.optimization_score:.1f}  "
        f"Preference match: {result.preference_match_score:.1f}  "
        f"Utilization: {result.therapist_utilization:.1f}%\n"
        f"Algorithm: {result.algorithm_used} ({result.iterations} iterations, "
        f"{result.generation_time_ms:.0f}ms)",
        title="Schedule Generation",
    ))

    if result.generated_sessions:
        table = Table(title="Sessions")
        table.add_column("#")
        table.add_column("Date")
        table.add_column("Time")
        table.add_column("Therapist")
        table.add_column("Score", justify="right")
        for s in result.generated_sessions:
            table.add_row(
                s.session_number or "",
                f"{s.scheduled_date} ({s.scheduled_date.strftime('%a')})",
                f"{s.start_time.strftime('%H:%M')}-{s.end_time.strftime('%H:%M')}",
                s.therapist_id,
                f"{s.optimization_score:.1f}",
            )
        console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]- {warning}[/yellow]")


@app.command()
def conflicts(
    sessions_file: Path = typer.Argument(..., help="JSON list of sessions to check"),
    existing_file: Optional[Path] = typer.Option(
        None, "--existing", "-e", help="JSON list of sessions already on the calendar"
    ),
    availability_file: Optional[Path] = typer.Option(
        None, "--availability", "-a", help="JSON list of therapist availability entries"
    ),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Detect conflicts for a batch of sessions."""
    from therapy_scheduler.scheduling.conflicts import ConflictDetector
    from therapy_scheduler.scheduling.models import ScheduledSession, TherapistAvailability

    sessions = _load_list(sessions_file, "Sessions", ScheduledSession)
    existing = _load_list(existing_file, "Existing sessions", ScheduledSession)
    availability = _load_list(availability_file, "Availability", TherapistAvailability)

    detector = ConflictDetector.from_settings()
    results = detector.detect_batch_conflicts(sessions, None, existing, availability)
    total = sum(len(c) for c in results.values())

    if output_json:
        typer.echo(json.dumps(
            {sid: [c.model_dump(mode="json") for c in found] for sid, found in results.items()},
            indent=2,
        ))
        return

    if not total:
        console.print(f"[green]No conflicts in {len(sessions)} sessions.[/green]")
        return

    table = Table(title=f"{total} conflicts")
    table.add_column("Session")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Description")
    for sid, found in results.items():
        for c in found:
            color = _SEVERITY_COLORS.get(c.severity.value, "white")
            table.add_row(sid, c.conflict_type.value, f"[{color}]{c.severity.value}[/{color}]", c.description)
    console.print(table)


@app.command()
def end_date(
    start: str = typer.Option(..., "--start", help="Program start date (YYYY-MM-DD)"),
    end: str = typer.Option(..., "--end", help="Program end date (YYYY-MM-DD)"),
    freeze_days: int = typer.Option(..., "--freeze-days", "-f", help="Days frozen"),
    exclude_weekends: bool = typer.Option(False, "--exclude-weekends", help="Program skips weekends"),
    holidays: Optional[list[str]] = typer.Option(None, "--holiday", help="Holiday date, repeatable"),
):
    """Show how a freeze moves a program's end date."""
    from therapy_scheduler.scheduling.freeze import calculate_new_end_date

    try:
        start_d = date.fromisoformat(start)
        end_d = date.fromisoformat(end)
        holiday_dates = [date.fromisoformat(h) for h in holidays or []]
    except ValueError as e:
        console.print(f"[red]Invalid date: {e}[/red]")
        raise typer.Exit(1)

    adjustment = calculate_new_end_date(
        "cli",
        start_d,
        end_d,
        freeze_days,
        exclude_weekends=exclude_weekends,
        holidays=holiday_dates,
        weekend_days=get_settings().weekend_days,
    )
    console.print(f"New end date: [bold]{adjustment.new_end_date}[/bold]")
    console.print(
        f"Adjustment: {adjustment.adjustment_days} days ({adjustment.calculation_method}), "
        f"+{adjustment.extension_percentage}% program length"
    )


@app.command()
def init_db():
    """Create the database tables."""
    from therapy_scheduler.core.database import init_db as create_tables

    asyncio.run(create_tables())
    console.print("[green]Database tables created.[/green]")


@app.command()
def telemetry(
    log_type: str = typer.Option("engine", "--type", "-t", help="Log type: engine, operations"),
):
    """Show engine telemetry statistics."""
    from therapy_scheduler.observability.logger import get_observability_logger

    stats = get_observability_logger().get_stats(log_type)
    if not stats.get("total"):
        console.print(f"[yellow]No {log_type} events recorded.[/yellow]")
        return

    table = Table(title=f"{log_type.title()} Events")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(stats["total"]))
    table.add_row("Errors", str(stats["errors"]))
    table.add_row("Error rate", f"{stats['error_rate']:.1%}")
    table.add_row("Avg duration", f"{stats['avg_duration_ms']:.1f}ms")
    console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting therapy scheduler API on {host}:{port}")
    uvicorn.run(
        "therapy_scheduler.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def version():
    """Show version information."""
    from therapy_scheduler import __version__

    console.print(f"Therapy Scheduler v{__version__}")
