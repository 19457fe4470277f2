# api/routes/health.py
from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.core.config import settings
from api.core.logging import get_structlog_logger
from api.db.session import health_check as database_health_check
from api.services.job_queue import get_job_queue
from api.services.redis import health_check as redis_health_check

logger = get_structlog_logger()

router = APIRouter(tags=["health"])

SERVICE_NAME = "lead_import_api"
SERVICE_VERSION = "1.0.0"

_started_at = time.monotonic()


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    version: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, Any]]


async def check_queue() -> Dict[str, Any]:
    try:
        queue = await get_job_queue()
        stats = await queue.get_queue_stats()
        return {"status": "healthy", **stats}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


async def _run_checks() -> Dict[str, Dict[str, Any]]:
    timeout = settings.health_check_timeout

    async def bounded(name: str, check) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(check, timeout=timeout)
        except asyncio.TimeoutError:
            return {"status": "unhealthy", "error": f"{name} check timed out"}

    database, redis_result = await asyncio.gather(
        bounded("database", database_health_check()),
        bounded("redis", redis_health_check()),
    )
    return {"database": database, "redis": redis_result}


@router.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Dependency health, including import queue depth."""
    checks = await _run_checks()
    checks["import_queue"] = await check_queue()

    overall_status = "healthy"
    for service, result in checks.items():
        if result.get("status") != "healthy":
            # Queue stats are informational; database and Redis are critical.
            overall_status = "unhealthy" if service in ("database", "redis") else "degraded"
            if overall_status == "unhealthy":
                break

    log = logger.info if overall_status == "healthy" else logger.warning
    log("health.check", status=overall_status, checks=checks)

    return HealthCheckResponse(
        status=overall_status,
        service=SERVICE_NAME,
        environment=settings.environment,
        version=SERVICE_VERSION,
        timestamp=datetime.utcnow().isoformat() + "Z",
        uptime=time.monotonic() - _started_at,
        checks=checks,
    )


@router.get("/health/live", status_code=status.HTTP_200_OK)
async def liveness_probe():
    """Simple liveness probe for Kubernetes/containers."""
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


@router.get("/health/ready")
async def readiness_probe():
    """Readiness probe that checks critical dependencies."""
    checks = await _run_checks()
    is_ready = all(result.get("status") == "healthy" for result in checks.values())

    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if is_ready else "not_ready",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "checks": {name: result.get("status", "unknown") for name, result in checks.items()},
        },
    )
