"""Shared FastAPI dependencies for the scheduling routes."""

from __future__ import annotations

from typing import Optional

from therapy_scheduler.config import get_settings
from therapy_scheduler.observability.logger import ObservabilityLogger, get_observability_logger


def get_observability() -> Optional[ObservabilityLogger]:
    """Engine telemetry sink, or None when observability is switched off."""
    if not get_settings().observability_enabled:
        return None
    return get_observability_logger()
