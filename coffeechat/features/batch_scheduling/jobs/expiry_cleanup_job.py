"""
Expiry Cleanup Background Job - lifecycle and retention enforcement.

Every CLEANUP_INTERVAL_MINUTES, for each organizer:
1. Expire pending reservations past their expires_at
2. Expire confirmed reservations that have ended
3. Expire suggestion sets whose slots have all lapsed
4. Delete suggestion sets past the grace period
5. Delete old reservations per the organizer's retention window (-1 keeps forever)

One organizer failing is logged and does not stop the others.

Usage:
    python -m coffeechat.jobs.worker expiry_cleanup
"""

import asyncio
from datetime import UTC, datetime

from coffeechat.config import settings
from coffeechat.features.batch_scheduling.repository import SchedulingRepository
from coffeechat.features.batch_scheduling.services import reservation_service
from coffeechat.features.batch_scheduling.services.reservation_service import ReservationService
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ExpiryCleanupJob:
    """Runs RunExpiryCleanup across all organizers."""

    def __init__(self, reservations: ReservationService | None = None, repository=None):
        self.reservations = reservations or reservation_service
        self.repository = repository or SchedulingRepository
        self.is_running = False

    async def run_cleanup(self, now: datetime | None = None) -> dict:
        """
        Run one cleanup pass.

        Returns:
            dict: {
                "success": bool,
                "organizers_processed": int,
                "total_changes": int,
                "errors": list,
            }
        """
        if self.is_running:
            logger.warning("Cleanup job already running, skipping")
            return {"success": False, "error": "Already running"}

        self.is_running = True
        now = now or datetime.now(UTC)
        start_time = datetime.now(UTC)

        result = {
            "success": True,
            "organizers_processed": 0,
            "total_changes": 0,
            "errors": [],
        }

        try:
            organizers = await self.repository.list_organizers()
            for organizer in organizers:
                try:
                    cleanup = await self.reservations.run_expiry_cleanup(organizer.id, now)
                    result["organizers_processed"] += 1
                    result["total_changes"] += cleanup.total_changes
                except Exception as e:
                    error_msg = f"Cleanup failed for organizer {organizer.id}: {e}"
                    logger.error(error_msg, organizer_id=organizer.id)
                    result["errors"].append(error_msg)

        except Exception as e:
            logger.error("Unexpected error in cleanup job", error=str(e))
            result["success"] = False
            result["errors"].append(f"Unexpected error: {e}")

        finally:
            self.is_running = False

        logger.info(
            "Expiry cleanup job completed",
            duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
            organizers=result["organizers_processed"],
            total_changes=result["total_changes"],
            errors=len(result["errors"]),
        )
        return result


# ==========================================================================
# SCHEDULER
# ==========================================================================


async def start_expiry_cleanup_scheduler():
    """Run the cleanup job every CLEANUP_INTERVAL_MINUTES until cancelled."""
    retention_config = settings.get_data_retention_config()

    if not retention_config["cleanup_enabled"]:
        logger.info("Expiry cleanup scheduler DISABLED", environment=settings.environment)
        return

    interval_seconds = retention_config["cleanup_interval_minutes"] * 60
    logger.info(
        "Expiry cleanup scheduler STARTED",
        interval_seconds=interval_seconds,
        environment=settings.environment,
    )

    while True:
        try:
            await expiry_cleanup_job.run_cleanup()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Expiry cleanup scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in cleanup scheduler, will retry", error=str(e))
            await asyncio.sleep(interval_seconds)


# Singleton instance for manual triggers
expiry_cleanup_job = ExpiryCleanupJob()
