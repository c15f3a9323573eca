"""
Job Scheduler Service

Periodic background work:
- custody_sync: refresh the custody cache from Snipe-IT (every SYNC_INTERVAL_MINUTES)
- mark_missed:  flag reservations not collected within the cutoff (every MISSED_SWEEP_INTERVAL_MINUTES)

Uses APScheduler interval triggers. Each job opens its own session and runs in a
worker thread so Snipe-IT and database calls never block the event loop.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..database import SessionLocal
from ..exceptions import ExternalSystemError
from .booking_service import BookingService
from .custody_sync import CustodySyncReconciler
from .snipeit_client import get_snipeit_client

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None
_last_runs: Dict[str, Dict] = {}


def _record(job_id: str, result: Dict):
    _last_runs[job_id] = {"time": datetime.utcnow().isoformat(), "result": result}


def run_custody_sync() -> Dict:
    """One sync pass; Snipe-IT failures are recorded, the previous cache stays"""
    db = SessionLocal()
    try:
        report = CustodySyncReconciler(db, get_snipeit_client()).sync()
        result = report.to_dict()
    except ExternalSystemError as e:
        logger.error(f"Scheduled custody sync failed: {e.message}")
        result = {"error": e.message}
    finally:
        db.close()

    _record("custody_sync", result)
    return result


def run_missed_sweep() -> Dict:
    db = SessionLocal()
    try:
        count = BookingService(db).mark_missed()
        result = {"missed": count}
    finally:
        db.close()

    _record("mark_missed", result)
    return result


async def run_custody_sync_job():
    logger.info("Running scheduled custody sync job...")
    try:
        await asyncio.to_thread(run_custody_sync)
    except Exception as e:
        logger.error(f"Scheduled custody sync job crashed: {e}")


async def run_missed_sweep_job():
    try:
        await asyncio.to_thread(run_missed_sweep)
    except Exception as e:
        logger.error(f"Scheduled missed sweep job crashed: {e}")


def start_job_scheduler() -> bool:
    """
    Start the background jobs.

    Returns:
        True if scheduler started successfully, False otherwise
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Job scheduler is already running")
        return True

    try:
        _scheduler = AsyncIOScheduler(timezone=settings.timezone)

        _scheduler.add_job(
            run_custody_sync_job,
            IntervalTrigger(minutes=settings.sync_interval_minutes),
            id="custody_sync",
            name=f"Custody sync every {settings.sync_interval_minutes} min",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        _scheduler.add_job(
            run_missed_sweep_job,
            IntervalTrigger(minutes=settings.missed_sweep_interval_minutes),
            id="mark_missed",
            name=f"Missed reservation sweep every {settings.missed_sweep_interval_minutes} min",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        _scheduler.start()

        logger.info(
            f"Job scheduler started (custody sync every {settings.sync_interval_minutes} min, "
            f"missed sweep every {settings.missed_sweep_interval_minutes} min)"
        )
        return True

    except Exception as e:
        logger.error(f"Failed to start job scheduler: {e}")
        return False


def stop_job_scheduler() -> bool:
    global _scheduler

    if _scheduler is None:
        return True

    try:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Job scheduler stopped")
        return True
    except Exception as e:
        logger.error(f"Failed to stop job scheduler: {e}")
        return False


def get_scheduler_status() -> Dict:
    status = {
        "running": False,
        "timezone": settings.timezone,
        "jobs": [],
        "last_runs": dict(_last_runs)
    }

    if _scheduler is not None and _scheduler.running:
        status["running"] = True
        for job in _scheduler.get_jobs():
            status["jobs"].append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None
            })

    return status
