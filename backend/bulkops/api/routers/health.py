"""Health, readiness and job-diagnostics endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bulkops.api.dependencies.db import get_session
from bulkops.api.dependencies.jobs import get_redis
from bulkops.services.diagnostics import health_report

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live", summary="Liveness check")
async def live() -> dict[str, str]:
    """Indicates API process is running."""
    return {"status": "ok", "service": "bulkops-api"}


@router.get("/ready", summary="Readiness check")
async def ready(
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
) -> dict[str, Any]:
    """Check the database and the Redis instance that backs progress and the broker."""
    checks: dict[str, Any] = {"status": "ok", "service": "bulkops-api", "checks": {}}
    all_healthy = True

    try:
        db.execute(text("SELECT 1")).fetchone()
        checks["checks"]["database"] = {"status": "healthy"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        checks["checks"]["database"] = {"status": "unhealthy", "message": str(e)}
        all_healthy = False

    try:
        redis.ping()
        checks["checks"]["redis"] = {"status": "healthy"}
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}", exc_info=True)
        checks["checks"]["redis"] = {"status": "unhealthy", "message": str(e)}
        all_healthy = False

    if not all_healthy:
        checks["status"] = "unhealthy"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=checks,
        )
    return checks


@router.get("/jobs", summary="Stalled jobs, error rates and queue backlog")
async def job_diagnostics(
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
) -> dict[str, Any]:
    return health_report(db, redis)
