"""
Health Check Endpoints

Health, liveness and readiness endpoints for container orchestration.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

from ...core.config import OutboxSettings
from ...core.database.adapter import get_database
from ...core.outbox.relay import get_outbox_relay

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": os.getenv("APP_VERSION", "1.0.0")
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe: the process is alive."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness probe.

    Checks database connectivity, the broker and the outbox relay. A
    broker outage does not make the service unready: writes still commit
    to the outbox and are relayed once the broker returns.
    """
    checks = {}
    all_healthy = True

    try:
        db = await get_database()
        await db.fetchrow("SELECT 1")
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    broker = getattr(request.app.state, "broker", None)
    if broker is not None:
        checks["broker"] = "healthy" if await broker.ping() else "unreachable"

    settings = OutboxSettings()
    if settings.enabled and settings.relay_enabled:
        relay = get_outbox_relay()
        checks["outbox_relay"] = "running" if relay and relay.is_running else "not running"

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now()
    }
