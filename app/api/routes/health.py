"""
Health Check Endpoints

Health, readiness and liveness probes, plus development-only views of
the per-tenant circuits and the shared Square plumbing.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.square import get_circuit_breaker, get_client_factory, get_query_coalescer
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


class DetailedHealthResponse(BaseModel):
    """Detailed health check with circuit and cache state."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    circuits: dict[str, dict[str, Any]]
    coalescer: dict[str, Any]
    client_cache_size: int
    config: dict[str, str]


def _require_development() -> None:
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )


async def _dependency_checks() -> dict[str, str]:
    return {
        "database": "ok" if await check_db_health() else "failed",
        "redis": "ok" if await check_redis_health() else "failed",
    }


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health() -> HealthResponse:
    """Always 200 while the process runs. Use /health/ready for dependencies."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "One or more dependencies are unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe.

    Checks the ledger database and Redis. Returns 503 if either fails.
    """
    checks = await _dependency_checks()
    all_ok = all(v == "ok" for v in checks.values())
    if not all_ok:
        logger.warning(f"Readiness check failed | checks: {checks}")

    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
)
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Circuit, coalescer and client cache state. Only available in development.",
    include_in_schema=settings.is_development,
)
async def detailed() -> DetailedHealthResponse:
    _require_development()

    checks = await _dependency_checks()
    circuits = get_circuit_breaker().get_all_states()
    if any(c["state"] != "CLOSED" for c in circuits.values()):
        checks["circuits"] = "degraded"

    config = {
        "app_name": settings.app_name,
        "environment": settings.app_env,
        "debug": str(settings.debug),
        "rate_limit_enabled": str(settings.rate_limiting_active),
        "rate_limit_rpm": str(settings.rate_limit_requests),
    }

    return DetailedHealthResponse(
        status="healthy" if all(v == "ok" for v in checks.values()) else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        circuits=circuits,
        coalescer=get_query_coalescer().get_stats(),
        client_cache_size=get_client_factory().size(),
        config=config,
    )


@router.post(
    "/circuits/reset",
    summary="Reset circuit breakers",
    description="Close one tenant's circuit, or all of them. Only available in development.",
    include_in_schema=settings.is_development,
)
async def reset_circuits(tenant_id: Optional[str] = None) -> dict:
    _require_development()

    get_circuit_breaker().reset(tenant_id)
    return {"status": "reset", "tenantId": tenant_id}
