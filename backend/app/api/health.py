"""Health check endpoints."""

import platform
import psutil
from datetime import datetime

from fastapi import APIRouter, Response

from app.services.healthcheck import get_health_checker, HealthStatus

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health(response: Response):
    """Dependency checks plus process resource usage.

    Returns 503 when a critical dependency (database, solver core) is down.
    """
    checker = get_health_checker()
    report = await checker.run_all_checks()

    memory = psutil.virtual_memory()
    body = report.to_dict()
    body["system"] = {
        "platform": platform.system(),
        "python": platform.python_version(),
        "cpu_percent": psutil.cpu_percent(interval=0.1),
        "memory_percent": memory.percent,
    }

    if report.status == HealthStatus.UNHEALTHY:
        response.status_code = 503
    return body
