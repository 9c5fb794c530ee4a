"""Structured observability events for scheduling engine runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of observability events."""

    ENGINE_RUN_START = "engine_run_start"
    ENGINE_RUN_SUCCESS = "engine_run_success"
    ENGINE_RUN_ERROR = "engine_run_error"
    ROLLBACK = "rollback"


class ObservabilityEvent(BaseModel):
    """Base class for all observability events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EngineRunEvent(ObservabilityEvent):
    """One generation, bulk or freeze run."""

    engine: str
    subject_id: Optional[str] = None

    input_count: int = 0
    output_count: int = 0
    conflict_count: int = 0
    success: Optional[bool] = None

    # Error fields
    error_type: Optional[str] = None
    error_message: Optional[str] = None


class RollbackEvent(ObservabilityEvent):
    """A bulk or freeze operation being undone."""

    event_type: EventType = EventType.ROLLBACK
    operation_id: str
    operation_kind: str  # bulk, freeze
    restored_count: int = 0
