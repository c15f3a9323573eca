from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
import logging
import uuid

from . import __version__
from .config import settings
from .database import create_tables
from .exceptions import KitdeskError
from .services.job_scheduler import start_job_scheduler, stop_job_scheduler
from .utils.logging_config import clear_request_context, set_request_context, setup_logging

from .routers import slots, availability, reservations, checkouts, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.log_json)

    logger.info(f"Starting kitdesk {__version__} ({settings.environment}, tz {settings.timezone})")
    create_tables()

    if settings.scheduler_enabled:
        start_job_scheduler()
    else:
        logger.info("Scheduler disabled, background jobs not started")

    yield

    logger.info("Shutting down kitdesk...")
    stop_job_scheduler()


app = FastAPI(
    title="kitdesk - Equipment Booking API",
    description="Availability, reservations and checkouts for a Snipe-IT equipment pool",
    version=__version__,
    lifespan=lifespan
)


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id, request.headers.get("X-User-Email"))
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)


@app.exception_handler(KitdeskError)
async def kitdesk_error_handler(request: Request, exc: KitdeskError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


# Include routers
app.include_router(health.router)
app.include_router(slots.router)
app.include_router(availability.router)
app.include_router(reservations.router)
app.include_router(checkouts.router)


@app.get("/")
async def root():
    return {
        "name": "kitdesk",
        "version": __version__,
        "docs": "/docs"
    }
