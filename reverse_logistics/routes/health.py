# ==== HEALTH CHECK AND RESILIENCE MONITORING ROUTES ==== #

"""
Probes and circuit breaker management.

``/healthz`` and ``/readyz`` are exempt from actor headers so orchestrators
can call them; circuit breaker views require an admin.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from reverse_logistics.business.access import Actor, ActorRole, ensure_role
from reverse_logistics.business.errors import NotFoundError
from reverse_logistics.middleware.actor import get_actor
from reverse_logistics.observability.logging import get_logger
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.resilience.circuit_breaker import get_circuit_breaker_stats, reset_circuit_breaker
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import get_session
from reverse_logistics.storage.redis import get_redis_client


# ==== ROUTER INITIALIZATION ==== #


router = APIRouter()
tracer = get_tracer(__name__)
logger = get_logger(__name__)


async def _check_database() -> Dict[str, Any]:
    try:
        async with get_session() as db:
            await db.execute(text("SELECT 1"))
        return {"healthy": True}
    except Exception as e:
        logger.warning("Database readiness check failed", error=str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> Dict[str, Any]:
    # Redis only backs the distributed rate limiter
    if settings.RTO_RATE_LIMIT_BACKEND != "redis":
        return {"healthy": True, "skipped": True}
    try:
        client = await get_redis_client()
        await client.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Redis readiness check failed", error=str(e))
        return {"healthy": False, "error": str(e)}


# ==== KUBERNETES PROBE ENDPOINTS ==== #


@router.get("/healthz")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe: the process answers HTTP."""
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/readyz")
async def readiness_check():
    """
    Readiness probe.

    Ready when the database answers and, with the Redis rate limiter
    enabled, Redis does too. Answers 503 otherwise.
    """
    with tracer.start_as_current_span("readiness_check") as span:
        services = {"database": await _check_database(), "redis": await _check_redis()}
        ready = all(service["healthy"] for service in services.values())
        span.set_attribute("ready", ready)

        body = {
            "status": "ready" if ready else "not_ready",
            "service": settings.SERVICE_NAME,
            "environment": settings.APP_ENV,
            "services": services,
        }
        if ready:
            return body
        return JSONResponse(status_code=503, content=body)


# ==== CIRCUIT BREAKER MANAGEMENT ==== #


@router.get("/api/circuit-breakers", response_model=Dict[str, Any])
async def get_circuit_breaker_status(actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """State of every collaborator circuit breaker."""
    ensure_role(actor, ActorRole.ADMIN)
    breakers = get_circuit_breaker_stats()
    return {
        "circuit_breakers": breakers,
        "summary": {
            "total": len(breakers),
            "open": sum(1 for stats in breakers.values() if stats["state"] == "open"),
        },
    }


@router.post("/api/circuit-breakers/{service_name}/reset", response_model=Dict[str, Any])
async def reset_service_circuit_breaker(service_name: str, actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    """Manually close a collaborator circuit breaker."""
    ensure_role(actor, ActorRole.ADMIN)
    with tracer.start_as_current_span("reset_circuit_breaker") as span:
        span.set_attribute("service", service_name)
        if not reset_circuit_breaker(service_name):
            raise NotFoundError("circuit_breaker", service_name)
        logger.info("Circuit breaker reset", service=service_name, actor_id=actor.id)
        return {"service": service_name, "reset": True}
