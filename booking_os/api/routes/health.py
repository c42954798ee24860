"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text

from booking_os import __version__

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "booking-os",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check - verifies the database answers."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "not_ready", "errors": ["Booking engine not initialised"]}

    try:
        async with services.machine.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return {"status": "not_ready", "errors": [f"Database check failed: {e}"]}

    dispatcher = services.dispatcher
    return {
        "status": "ready",
        "notifications": {
            "running": dispatcher.running if dispatcher else False,
            "dropped": dispatcher.dropped if dispatcher else 0,
        },
    }


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}
