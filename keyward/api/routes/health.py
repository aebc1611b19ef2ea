"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text

from ..models import HealthStatus
from ..deps import get_db
from ...auth.challenges import get_redis_client
from ...database.auth_db import AuthDB
from ...errors import StoreError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "0.1.0")


@router.get("", response_model=HealthStatus)
async def health_check(db: AuthDB = Depends(get_db)):
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    services = {}
    overall_healthy = True

    # Check relational store
    try:
        start = time.time()
        with db.get_session() as session:
            session.execute(text("SELECT 1"))
        latency = (time.time() - start) * 1000
        services["database"] = f"healthy ({latency:.1f}ms)"
    except StoreError as e:
        logger.warning(f"Health check: database unavailable: {e.__cause__}")
        services["database"] = "unhealthy"
        overall_healthy = False

    # Redis failure is not critical - challenges fall back to in-memory storage
    redis_client = get_redis_client()
    services["redis"] = "healthy" if redis_client else "fallback_mode (in-memory)"

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )
