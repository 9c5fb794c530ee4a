"""Health check endpoints."""

import logging

from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError

from therapy_scheduler import __version__
from therapy_scheduler.core.database import ping_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "therapy-scheduler",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check() -> dict:
    """Readiness check - verifies the database answers."""
    try:
        await ping_db()
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Readiness check failed: {e}")
        return {
            "status": "not_ready",
            "errors": [f"Database check failed: {e}"],
        }

    return {"status": "ready", "database": "ok"}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}
