"""
Health Check Endpoints

- /health       - Component status: database, Snipe-IT, custody cache freshness, scheduler
- /health/live  - Liveness check (is process running)
- /health/ready - Readiness check (database reachable)
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import func, text
from datetime import datetime, timezone
import time

from .. import __version__
from ..config import settings
from ..database import get_db
from ..exceptions import ExternalSystemError
from ..models.custody_cache import CustodyCacheEntry
from ..services.custody_sync import CACHE_STALE_SECONDS
from ..services.job_scheduler import get_scheduler_status
from ..utils.datetime_helpers import utcnow
from ..utils.dependencies import get_custody_client

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": db.get_bind().dialect.name
        }
    except Exception as e:
        return {
            "status": "down",
            "error": str(e)[:100]
        }


def get_custody_health(client) -> dict:
    if client is None or not settings.snipeit_base_url:
        return {"status": "not_configured"}
    try:
        start = time.time()
        client.ping()
        return {"status": "up", "latency_ms": round((time.time() - start) * 1000, 2)}
    except ExternalSystemError as e:
        return {"status": "down", "error": e.message[:100]}


def get_cache_health(db: Session) -> dict:
    rows, newest = db.query(
        func.count(CustodyCacheEntry.id),
        func.max(CustodyCacheEntry.updated_at)
    ).one()
    if newest is None:
        return {"status": "empty", "rows": 0}

    age = (utcnow() - newest).total_seconds()
    return {
        "status": "stale" if age > CACHE_STALE_SECONDS else "fresh",
        "rows": rows,
        "age_seconds": int(age)
    }


@router.get("/live")
async def liveness_check():
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe - is the service ready to accept traffic?
    Checks database connectivity.
    """
    db_health = get_db_health(db)

    if db_health["status"] == "up":
        return {
            "status": "ready",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "status": "not_ready",
            "reason": "database_unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


@router.get("")
def health_check(db: Session = Depends(get_db), client=Depends(get_custody_client)):
    db_health = get_db_health(db)
    checks = {
        "database": db_health,
        "snipeit": get_custody_health(client),
        "custody_cache": get_cache_health(db) if db_health["status"] == "up" else {"status": "unknown"},
        "scheduler": get_scheduler_status()
    }

    if db_health["status"] == "down":
        overall_status = "unhealthy"
    elif checks["snipeit"]["status"] == "down" or checks["custody_cache"]["status"] == "stale":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "environment": settings.environment,
        "checks": checks
    }
