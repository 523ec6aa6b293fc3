"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.services.infrastructure.encryption_service import validate_encryption_config

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "crm-chat-assistant"}


@router.get("/health")
async def health():
    """
    Readiness check covering the database pool and required configuration.
    """
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
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

    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    elif not validate_encryption_config():
        config_issues.append("ENCRYPTION_KEY is not a valid Fernet key")
    if not settings.OPENAI_API_KEY:
        config_issues.append("OPENAI_API_KEY not set")
    if not (settings.HUBSPOT_CLIENT_ID or settings.SALESFORCE_CLIENT_ID):
        config_issues.append("No CRM OAuth client configured")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
