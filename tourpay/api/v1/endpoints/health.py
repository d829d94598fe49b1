"""
Health check endpoints
"""

from typing import Any
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from tourpay.config import settings
from tourpay.core.database import db_manager
from tourpay.core.metrics import HealthChecker
from tourpay.core.redis import redis_manager

router = APIRouter()

health_checker = HealthChecker(redis_manager, db_manager)


@router.get("/live")
async def liveness() -> Any:
    """
    Kubernetes liveness probe
    """
    return {"status": "alive", "service": settings.APP_NAME}


@router.get("/ready")
async def readiness() -> Any:
    """
    Kubernetes readiness probe. Redis being down only degrades the service.
    """
    health = await health_checker.get_system_health()
    health["version"] = settings.APP_VERSION
    status_code = 503 if health["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=health)
