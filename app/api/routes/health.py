"""
NIMBUS - Health Check API Routes
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from app.core.config import settings
from app.core.database import db_manager


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime
    version: str
    uptime_seconds: float
    components: Dict[str, Any]


_start_time = datetime.utcnow()


def _provider_status(services: Optional[dict]) -> Dict[str, Any]:
    if not services:
        return {"status": "unknown"}
    weather = services["settlement"].weather
    breakers = {
        provider.name: provider.circuit_breaker.state.value
        for provider in (weather.primary, weather.secondary)
    }
    degraded = any(state != "closed" for state in breakers.values())
    return {"status": "degraded" if degraded else "healthy", "circuit_breakers": breakers}


def _poller_status(services: Optional[dict]) -> Dict[str, Any]:
    if not services:
        return {"status": "unknown"}
    poller = services["poller"]
    return {
        "status": "healthy" if poller.is_running else "stopped",
        "cycles_run": poller.cycles_run,
        "cycles_skipped": poller.cycles_skipped,
    }


@router.get("", response_model=HealthResponse)
async def health_check(request: Request):
    """Health of the database, weather providers and cash-out poller"""
    services = getattr(request.app.state, "services", None)
    components = {
        "database": await db_manager.health_check(),
        "weather": _provider_status(services),
        "cashout_poller": _poller_status(services),
    }

    if components["database"].get("status") != "healthy":
        overall = "unhealthy"
    elif components["weather"]["status"] == "degraded":
        overall = "degraded"
    else:
        overall = "healthy"

    now = datetime.utcnow()
    return {
        "status": overall,
        "timestamp": now,
        "version": settings.APP_VERSION,
        "uptime_seconds": (now - _start_time).total_seconds(),
        "components": components,
    }
