"""
Calendar sync background job.

Pushes confirmed reservations to each organizer's external calendar,
respecting the organizer's sync_frequency.
"""

import asyncio
from datetime import UTC, datetime

from coffeechat.config import settings
from coffeechat.features.batch_scheduling.repository import SchedulingRepository
from coffeechat.features.batch_scheduling.services import calendar_sync_service
from coffeechat.features.batch_scheduling.services.sync_service import CalendarSyncService
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def run_calendar_sync(
    sync_service: CalendarSyncService | None = None,
    repository=None,
    now: datetime | None = None,
) -> dict:
    """Sync every organizer that is due. Returns aggregate counts."""
    sync_service = sync_service or calendar_sync_service
    repository = repository or SchedulingRepository
    now = now or datetime.now(UTC)

    summary = {"organizers": 0, "synced": 0, "skipped": 0, "errors": []}
    for organizer in await repository.list_organizers():
        summary["organizers"] += 1
        try:
            result = await sync_service.sync_confirmed(organizer, now=now)
        except Exception as e:
            logger.error("Calendar sync failed", organizer_id=organizer.id, error=str(e))
            summary["errors"].append({"organizer_id": organizer.id, "error": str(e)})
            continue

        if result["skipped"]:
            summary["skipped"] += 1
        summary["synced"] += result["synced"]
        summary["errors"].extend(result["errors"])

    logger.info(
        "Calendar sync pass completed",
        organizers=summary["organizers"],
        synced=summary["synced"],
        skipped=summary["skipped"],
        errors=len(summary["errors"]),
    )
    return summary


async def start_calendar_sync_scheduler():
    if not settings.CALENDAR_SYNC_ENABLED:
        logger.info("Calendar sync scheduler DISABLED", environment=settings.environment)
        return

    interval_seconds = settings.CALENDAR_SYNC_INTERVAL_MINUTES * 60
    logger.info("Calendar sync scheduler STARTED", interval_seconds=interval_seconds)

    while True:
        try:
            await run_calendar_sync()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Calendar sync scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in calendar sync scheduler, will retry", error=str(e))
            await asyncio.sleep(interval_seconds)
