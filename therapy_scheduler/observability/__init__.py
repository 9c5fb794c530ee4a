"""Observability module for scheduling engine telemetry."""

from therapy_scheduler.observability.events import (
    EngineRunEvent,
    EventType,
    ObservabilityEvent,
    RollbackEvent,
)
from therapy_scheduler.observability.logger import ObservabilityLogger, get_observability_logger

__all__ = [
    "EngineRunEvent",
    "EventType",
    "ObservabilityEvent",
    "ObservabilityLogger",
    "RollbackEvent",
    "get_observability_logger",
]
