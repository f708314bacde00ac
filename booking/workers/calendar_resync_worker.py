"""
Calendar Resync Worker - re-projects appointments marked "not synced".

When a calendar projection fails after a commit, the appointment keeps its
state and is flagged calendar_sync_pending. This worker periodically retries
those projections:

- committed / finished appointments: create or update their event
- cancelled / no-show appointments: delete the leftover event

Re-authentication is interactive, so a tenant is skipped for the rest of a
pass at its first AuthRequired or NotConfigured.

Runs every CALENDAR_RESYNC_INTERVAL_MINUTES in a single event loop and shuts
down gracefully on SIGTERM/SIGINT.
"""

import asyncio
import json
import logging
import signal
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import UUID

from booking.errors import AuthRequired, BookingError, CalendarSyncError, NotConfigured
from booking.services.calendar_session import CalendarSessionRegistry
from booking.services.calendar_sync_service import CalendarAdapterFactory
from booking.transactions.booking_transaction import BookingTransaction
from database.connection import dispose_engine
from database.repository import (
    SchedulingRepository,
    SqlCalendarLinkRepository,
    SqlSchedulingRepository,
)
from shared.config import get_settings
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

HEALTH_DIR = Path("/tmp/health")

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def run_resync_pass(
    repository: SchedulingRepository,
    transaction: BookingTransaction,
    batch_size: int,
) -> dict[str, int]:
    """
    Retry the projection of up to ``batch_size`` pending appointments.

    Returns:
        Stats dict: pending, synced, skipped, errors, tenants_blocked
    """
    stats = {"pending": 0, "synced": 0, "skipped": 0, "errors": 0, "tenants_blocked": 0}
    blocked: set[UUID] = set()

    pending = await repository.list_sync_pending(batch_size)
    stats["pending"] = len(pending)
    if not pending:
        logger.debug("No appointments pending calendar sync")
        return stats

    for appointment in pending:
        if appointment.tenant_id in blocked:
            stats["skipped"] += 1
            continue

        log_extra = {"tenant_id": str(appointment.tenant_id), "appointment_id": str(appointment.id)}
        try:
            await transaction.resync_appointment(appointment.tenant_id, appointment.id)
            stats["synced"] += 1
        except (AuthRequired, NotConfigured) as e:
            logger.info(
                f"Tenant needs calendar re-authorization ({e.error_code}), skipping its pending appointments",
                extra=log_extra,
            )
            blocked.add(appointment.tenant_id)
            stats["skipped"] += 1
        except CalendarSyncError as e:
            logger.warning(f"Resync failed: {e.error_code}: {e.message}", extra=log_extra)
            stats["errors"] += 1
        except BookingError as e:
            logger.error(f"Resync failed: {e.error_code}: {e.message}", extra=log_extra)
            stats["errors"] += 1

    stats["tenants_blocked"] = len(blocked)
    logger.info(
        f"Resync pass complete: {stats['synced']}/{stats['pending']} synced, "
        f"{stats['skipped']} skipped, {stats['errors']} errors"
    )
    return stats


async def update_health_check(last_run: datetime, status: str, stats: dict[str, Any]) -> None:
    """
    Update health check file with job statistics.
    """
    HEALTH_DIR.mkdir(parents=True, exist_ok=True)
    health_file = HEALTH_DIR / "calendar_resync_worker_health.json"
    temp_file = HEALTH_DIR / f"calendar_resync_worker_health.{int(time.time())}.tmp"

    health_data = {
        "last_run": last_run.isoformat(),
        "status": status,
        "pending": stats.get("pending", 0),
        "synced": stats.get("synced", 0),
        "skipped": stats.get("skipped", 0),
        "errors": stats.get("errors", 0),
        "tenants_blocked": stats.get("tenants_blocked", 0),
        "last_updated": datetime.now(UTC).isoformat(),
    }

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


async def async_main() -> None:
    """
    Main async entry point - runs resync passes on schedule using a single event loop.

    Uses asyncio.sleep() in one loop instead of one asyncio.run() per pass:
    asyncpg connections are bound to the loop that created them.
    """
    settings = get_settings()
    interval_minutes = settings.CALENDAR_RESYNC_INTERVAL_MINUTES

    repository = SqlSchedulingRepository()
    adapter_factory = CalendarAdapterFactory(
        repository, SqlCalendarLinkRepository(), CalendarSessionRegistry()
    )
    transaction = BookingTransaction(repository, adapter_factory)

    logger.info(f"Calendar resync worker starting: interval={interval_minutes} minutes")
    await update_health_check(last_run=datetime.now(UTC), status="starting", stats={})

    try:
        while not shutdown_requested:
            try:
                stats = await run_resync_pass(repository, transaction, settings.CALENDAR_RESYNC_BATCH_SIZE)
                status = "healthy" if stats["errors"] == 0 else "degraded"
            except Exception as e:
                logger.error(f"Resync pass failed: {e}", exc_info=True)
                stats, status = {}, "unhealthy"
            await update_health_check(last_run=datetime.now(UTC), status=status, stats=stats)

            # Sleep for the interval, checking the shutdown flag every second
            for _ in range(interval_minutes * 60):
                if shutdown_requested:
                    break
                await asyncio.sleep(1)
    finally:
        await transaction.drain()
        await dispose_engine()

    logger.info("Calendar resync worker shutting down gracefully...")


def run_calendar_resync_worker() -> None:
    """
    Synchronous entry point that sets up logging and signal handlers,
    then runs the async main function.
    """
    configure_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main())


if __name__ == "__main__":
    run_calendar_resync_worker()
