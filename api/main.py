"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_booking_transaction
from api.routes import appointments, calendar, public
from booking.errors import (
    AuthRequired,
    BookingError,
    CalendarEventNotFound,
    CalendarSyncError,
    InvalidTransition,
    NotConfigured,
    NotFound,
    ProviderError,
    ProviderUnavailable,
    SlotConflict,
    StaleWrite,
    ValidationError,
)
from shared.circuit_breaker import get_breaker_status
from shared.config import get_settings
from shared.logging_config import configure_logging

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="BarberOS API",
    version="1.0.0",
)

# Load settings for CORS configuration
settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(appointments.router)
app.include_router(public.router)
app.include_router(calendar.router)


# First match wins: subclasses before their bases
ERROR_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (ValidationError, 422),
    (NotFound, 404),
    (SlotConflict, 409),
    (InvalidTransition, 409),
    (StaleWrite, 409),
    (NotConfigured, 412),
    (AuthRequired, 401),
    (ProviderUnavailable, 503),
    (CalendarEventNotFound, 404),
    (ProviderError, 502),
]


def status_code_for(exc: Exception) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500 if isinstance(exc, BookingError) else 502


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    """Return {error_code, error_message, details} for scheduling failures."""
    status_code = status_code_for(exc)
    logger.info(
        f"Booking request rejected: {exc.error_code}: {exc.message}",
        extra={"request_path": request.url.path},
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(CalendarSyncError)
async def calendar_error_handler(request: Request, exc: CalendarSyncError) -> JSONResponse:
    """Calendar operations (connect, busy, resync) surface provider errors directly."""
    status_code = status_code_for(exc)
    logger.warning(
        f"Calendar request failed: {exc.error_code}: {exc.message}",
        extra={"request_path": request.url.path},
    )
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


@app.on_event("startup")
async def ensure_schema() -> None:
    """Create missing tables before serving requests."""
    from database.connection import init_db

    logger.info("Running API startup schema check...")
    await init_db()


@app.on_event("shutdown")
async def drain_background_projections() -> None:
    """Let in-flight calendar deletions finish before the process exits."""
    from database.connection import dispose_engine

    transaction = get_booking_transaction()
    if transaction.pending_background_tasks:
        logger.info(f"Draining {transaction.pending_background_tasks} background calendar tasks...")
    await transaction.drain()
    await dispose_engine()


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks:
    - PostgreSQL connectivity (SELECT 1 query)
    - Google Calendar circuit breaker state (informational, never degrades)

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    from sqlalchemy import text

    from database.connection import get_async_session

    health_status = {
        "status": "healthy",
        "postgres": "unknown",
        "circuit_breakers": get_breaker_status(),
    }
    status_code = 200

    # Check PostgreSQL connectivity
    try:
        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))
            health_status["postgres"] = "connected"
    except Exception:
        health_status["postgres"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "BarberOS API - Use /health for health checks"}
