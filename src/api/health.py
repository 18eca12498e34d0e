"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + webhook queue + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from src.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"
WORKER_NAMES = ("webhook_dispatcher", "order_reaper", "token_hygiene")

# Queue is unhealthy once the oldest pending event has waited this long
MAX_PENDING_AGE_SECONDS = 600


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Used by Kubernetes/Railway to determine if the app can serve traffic.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Deep health check - checks ALL dependencies.

    Checks:
    - PostgreSQL: SELECT 1
    - Redis: PING
    - Webhook queue: pending depth, parked count, oldest pending age
    - Workers: heartbeat freshness
    """
    now = datetime.now(timezone.utc)
    checks = {}

    checks["database"] = await _check_database(db)
    checks["redis"] = await _check_redis()
    checks["webhook_queue"] = await _check_webhook_queue(db)
    checks["workers"] = await _check_workers()

    critical = ["database"]
    critical_healthy = all(checks.get(k, {}).get("healthy", False) for k in critical)
    all_healthy = all(c.get("healthy", False) for c in checks.values())

    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "timestamp": now.isoformat(),
        "version": APP_VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    """Check PostgreSQL connectivity."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Deep health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    """Check Redis connectivity."""
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Deep health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_webhook_queue(db: AsyncSession) -> dict:
    """Pending backlog and parked events. Parked events need an operator."""
    try:
        from src.services.event_store import queue_stats
        stats = await queue_stats(db)
        age = stats.get("oldest_pending_age_seconds")
        healthy = stats["parked"] == 0 and (age is None or age < MAX_PENDING_AGE_SECONDS)
        return {"healthy": healthy, **stats}
    except Exception as e:
        logger.warning("Deep health: webhook queue check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_workers() -> dict:
    """Check worker heartbeat timestamps in Redis."""
    try:
        from src.utils.redis_client import get_redis, HEARTBEAT_KEY_PREFIX
        redis = await get_redis()

        workers = {}
        for name in WORKER_NAMES:
            heartbeat = await redis.get(f"{HEARTBEAT_KEY_PREFIX}{name}")
            workers[name] = {
                "healthy": heartbeat is not None,
                "last_heartbeat": heartbeat,
            }

        all_healthy = all(w["healthy"] for w in workers.values())
        return {"healthy": all_healthy, "workers": workers}
    except Exception as e:
        logger.debug("Deep health: worker heartbeat check failed: %s", str(e))
        return {"healthy": True, "note": "Unable to check worker heartbeats"}
