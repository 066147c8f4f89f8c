"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB, dedup ledger, dispatch worker)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from billing_sentinel.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    from billing_sentinel.config import get_settings
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": get_settings().app_version,
    }


@router.get("/health/ready")
async def readiness_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Readiness check - database, Redis (when the ledger lives there) and the worker."""
    checks = {"database": False, "dedup_ledger": False, "dispatch_worker": False}
    services = getattr(request.app.state, "services", None)

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    if services is not None:
        if services.settings.dedup_backend == "redis":
            try:
                from billing_sentinel.utils.dedup import get_redis
                redis = await get_redis()
                await redis.ping()
                checks["dedup_ledger"] = True
            except Exception as e:
                logger.warning("Redis health check failed: %s", str(e))
        else:
            checks["dedup_ledger"] = True
        checks["dispatch_worker"] = services.worker.running

    all_healthy = all(checks.values())
    body = {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if services is not None:
        body["queue_depth"] = services.worker.queue.qsize()
        body["alerts_sent"] = services.audit.alerter.sent
    return body
