"""
Health check and monitoring endpoints.
"""
import logging
import time
from typing import Dict, Any

from fastapi import APIRouter, Request, Response
from sqlalchemy import text

from sessionguard.config import settings
from sessionguard.database import async_session_maker
from sessionguard.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# DEPENDENCY HEALTH CHECKERS
# ============================================================================

async def check_database_health() -> Dict[str, Any]:
    """Check session store connectivity."""
    try:
        start = time.time()
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "reason": "database_unavailable",
        }


def check_geolocation_health(request: Request) -> Dict[str, Any]:
    """
    Report the geolocation circuit and cache.

    An open circuit is "degraded", never "unhealthy": sessions keep
    working without geo data.
    """
    resolver = getattr(request.app.state, "geo_resolver", None)
    if resolver is None:
        return {"status": "unknown", "reason": "not_initialized"}

    status = "healthy"
    circuit = None
    if resolver.circuit is not None:
        circuit = resolver.circuit.get_status()
        if circuit["state"] != "closed":
            status = "degraded"

    return {
        "status": status,
        "provider": resolver.base_url,
        "circuit": circuit,
        "cache": resolver.cache.stats if resolver.cache is not None else None,
    }


# ============================================================================
# HEALTH ENDPOINTS
# ============================================================================

@router.get("")
async def health_check(request: Request):
    """
    Comprehensive health check endpoint.
    Returns service status and all component health.
    """
    components = {
        "database": await check_database_health(),
        "geolocation": check_geolocation_health(request),
    }

    statuses = [c.get("status", "unknown") for c in components.values()]

    if all(s == "healthy" for s in statuses):
        overall_status = "healthy"
    elif components["database"]["status"] == "unhealthy":
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat(),
        "version": settings.APP_VERSION,
        "components": components,
        "config": {
            "rate_limiting": settings.RATE_LIMIT_ENABLED,
            "serialize_registration": settings.SERIALIZE_SESSION_REGISTRATION,
            "maintenance_scheduler": settings.ENABLE_MAINTENANCE_SCHEDULER,
        }
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check for load balancers.
    Returns 200 if the session store is reachable.
    """
    db_health = await check_database_health()

    if db_health.get("status") != "healthy":
        return Response(
            content='{"status": "not_ready", "reason": "database_unavailable"}',
            status_code=503,
            media_type="application/json"
        )

    return {"status": "ready"}


@router.get("/live")
async def liveness_check():
    """
    Liveness check for orchestration systems.
    Returns 200 if the service process is alive.
    """
    return {"status": "alive", "timestamp": utcnow().isoformat()}
