"""Health check endpoints for liveness and readiness probes."""
import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from redis import asyncio as aioredis
from sqlalchemy import text

from credit_engine.config import settings
from credit_engine.database import engine
from credit_engine.models.base import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    """
    Liveness probe.

    Returns basic health status if the process is running. Does not check
    external dependencies.
    """
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready", tags=["Health"])
async def readiness_check() -> JSONResponse:
    """
    Readiness probe.

    Checks the database and the Redis instance the workers use. Returns 200
    only if both answer.
    """
    checks = {"database": "unknown", "redis": "unknown"}
    ready = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    redis_client = aioredis.from_url(str(settings.arq_redis_url))
    try:
        await redis_client.ping()
        checks["redis"] = "connected"
    except Exception as exc:
        logger.error("redis_health_check_failed", error=str(exc))
        checks["redis"] = "disconnected"
        ready = False
    finally:
        await redis_client.aclose()

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "ready": ready,
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        },
    )
