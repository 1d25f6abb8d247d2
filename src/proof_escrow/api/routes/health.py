"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Redis is optional: without it settlement locks are process-local, so a
missing Redis reports "not configured" rather than degrading health.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text

from proof_escrow.infrastructure.database.engine import get_engine
from proof_escrow.infrastructure.redis_client import get_redis, redis_available
from proof_escrow.logging_config import get_logger
from proof_escrow.schemas.deals import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(request: Request) -> HealthResponse:
    db_status = "unknown"
    redis_status = "not configured"

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if redis_available():
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    cron = getattr(request.app.state, "cron", None)
    scheduler_status = "running" if cron is not None and cron.running else "disabled"

    overall = "ok" if db_status == "healthy" and not redis_status.startswith("unhealthy") else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        scheduler=scheduler_status,
    )
