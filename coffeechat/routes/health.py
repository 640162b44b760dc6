"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter

from coffeechat.config import settings
from coffeechat.db.pool import db_health_check
from coffeechat.services.calendar.google_client import google_calendar_service

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "coffeechat-scheduler"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering the database pool, the calendar API and
    required configuration.

    The calendar check is reported but does not gate readiness: a batch
    treats calendar failures per contact.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                }
            )
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Calendar API
    t0 = time.time()
    try:
        calendar_health = await google_calendar_service.health_check()
        checks["calendar_api"] = {
            "ok": calendar_health.get("healthy", False),
            "connectivity": calendar_health.get("api_connectivity"),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
    except Exception as e:
        checks["calendar_api"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

    # 3) Configuration
    config_issues = []
    if not settings.DATABASE_URL:
        config_issues.append("DATABASE_URL not set")
    if not settings.AUTH_JWT_SECRET and not settings.AUTH_JWKS_URL:
        config_issues.append("AUTH_JWT_SECRET or AUTH_JWKS_URL must be set")

    config_ok = not config_issues
    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and config_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
