# app/routes/health.py
"""
Health check endpoints: liveness, readiness, and diagnostics for the
database pool and the mail scheduler worker.
"""

import time

from fastapi import APIRouter

from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.repositories.mail_job_repository import mail_job_repository
from app.services.mail_scheduler_service import mail_scheduler_service

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "account-portal"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check. The database gates readiness; the mail scheduler is
    reported but never makes the app unready (delivery is only delayed).
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
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check(
            "database",
            is_healthy,
            checks["database"]["latency_ms"],
            error=checks["database"].get("error"),
        )
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False
        log_health_check("database", False, checks["database"]["latency_ms"], error=str(e))

    # 2) Mail scheduler (informational)
    try:
        running = mail_scheduler_service.is_running()
        checks["mail_scheduler"] = {
            "ok": running and not mail_scheduler_service.is_heartbeat_stale(),
            "running": running,
        }
    except Exception as e:
        checks["mail_scheduler"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()


@router.get("/health/mail-scheduler")
async def mail_scheduler_health():
    """
    Mail scheduler diagnostics: worker liveness, heartbeat staleness, the
    persisted WorkerStatus snapshot, and job counts per state.
    """
    status = mail_scheduler_service.get_status()
    status["heartbeat_stale"] = mail_scheduler_service.is_heartbeat_stale()

    try:
        status["jobs"] = await mail_job_repository.get_statistics()
    except Exception as e:
        status["jobs"] = {"error": f"{type(e).__name__}: {e}"}

    return status
