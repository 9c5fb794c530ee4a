"""Observability logger for structured engine telemetry."""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from therapy_scheduler.observability.events import (
    EngineRunEvent,
    EventType,
    ObservabilityEvent,
    RollbackEvent,
)

logger = logging.getLogger(__name__)


class ObservabilityLogger:
    """Central logger for scheduling engine events.

    Writes structured events to JSON Lines files for later analysis.
    """

    _instance: Optional["ObservabilityLogger"] = None

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        enabled: bool = True,
    ):
        """Initialize observability logger.

        Args:
            log_dir: Directory for log files (default: data/logs)
            enabled: Whether logging is enabled
        """
        self.enabled = enabled

        if log_dir is None:
            log_dir = Path("data/logs")
        self.log_dir = Path(log_dir)
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._log_files: dict[str, Path] = {
            "engine": self.log_dir / "engine_runs.jsonl",
            "operations": self.log_dir / "operations.jsonl",
        }

        # Event callbacks for real-time monitoring
        self._callbacks: list[Callable[[ObservabilityEvent], None]] = []

    @classmethod
    def get_instance(cls) -> "ObservabilityLogger":
        """Get or create singleton instance configured from settings."""
        if cls._instance is None:
            from therapy_scheduler.config import get_settings

            settings = get_settings()
            cls._instance = cls(
                log_dir=settings.observability_log_dir,
                enabled=settings.observability_enabled,
            )
        return cls._instance

    def generate_request_id(self) -> str:
        """Generate a unique request ID."""
        return str(uuid.uuid4())[:8]

    def add_callback(self, callback: Callable[[ObservabilityEvent], None]) -> None:
        """Add callback for real-time event monitoring."""
        self._callbacks.append(callback)

    def _write_event(self, event: ObservabilityEvent, log_type: str) -> None:
        if not self.enabled:
            return

        try:
            log_file = self._log_files.get(log_type)
            if log_file:
                with open(log_file, "a") as f:
                    f.write(event.model_dump_json() + "\n")

            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Observability callback failed: {e}")

        except OSError as e:
            logger.warning(f"Failed to write observability event: {e}")

    # Engine runs

    @contextmanager
    def engine_run(
        self,
        engine: str,
        subject_id: Optional[str] = None,
        input_count: int = 0,
        request_id: Optional[str] = None,
    ):
        """Context manager for logging an engine run.

        Usage:
            with obs.engine_run("generate_schedule", input_count=12) as event:
                result = engine.run(...)
                event.output_count = len(result.generated_sessions)
        """
        start_time = time.time()

        event = EngineRunEvent(
            event_type=EventType.ENGINE_RUN_START,
            engine=engine,
            subject_id=subject_id,
            input_count=input_count,
            request_id=request_id or self.generate_request_id(),
        )

        try:
            yield event
            event.event_type = EventType.ENGINE_RUN_SUCCESS

        except Exception as e:
            event.event_type = EventType.ENGINE_RUN_ERROR
            event.success = False
            event.error_type = type(e).__name__
            event.error_message = str(e)[:200]
            raise

        finally:
            event.duration_ms = (time.time() - start_time) * 1000
            self._write_event(event, "engine")

    def log_rollback(self, operation_id: str, operation_kind: str, restored_count: int) -> None:
        event = RollbackEvent(
            operation_id=operation_id,
            operation_kind=operation_kind,
            restored_count=restored_count,
        )
        self._write_event(event, "operations")

    # Utility methods

    def get_recent_events(
        self,
        log_type: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Read recent events from a log file."""
        log_file = self._log_files.get(log_type)
        if not log_file or not log_file.exists():
            return []

        events = []
        with open(log_file) as f:
            for line in f:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        return events[-limit:]

    def get_stats(self, log_type: str) -> dict[str, Any]:
        """Get basic statistics for a log type."""
        events = self.get_recent_events(log_type, limit=1000)
        if not events:
            return {"total": 0}

        total = len(events)
        errors = sum(1 for e in events if "error" in e.get("event_type", ""))
        avg_duration = sum(e.get("duration_ms") or 0 for e in events) / total

        return {
            "total": total,
            "errors": errors,
            "error_rate": errors / total,
            "avg_duration_ms": avg_duration,
        }


def get_observability_logger() -> ObservabilityLogger:
    """Get the global observability logger instance."""
    return ObservabilityLogger.get_instance()
