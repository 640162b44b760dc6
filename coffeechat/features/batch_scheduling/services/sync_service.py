"""
Pushes confirmed reservations to the organizer's external calendar.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from coffeechat.features.batch_scheduling.domain.errors import CalendarProviderError
from coffeechat.features.batch_scheduling.domain.models import OrganizerProfile, SyncFrequency
from coffeechat.features.batch_scheduling.repository import SchedulingRepository
from coffeechat.infrastructure.observability.logging import get_logger

from .calendar_provider import CalendarProvider

logger = get_logger(__name__)

SYNC_INTERVALS = {
    SyncFrequency.REALTIME: timedelta(0),
    SyncFrequency.HOURLY: timedelta(hours=1),
    SyncFrequency.DAILY: timedelta(days=1),
}


class CalendarSyncService:
    def __init__(self, provider: CalendarProvider, repository=SchedulingRepository):
        self.provider = provider
        self.repository = repository

    def is_due(self, organizer: OrganizerProfile, now: datetime) -> bool:
        if organizer.last_calendar_sync is None:
            return True
        interval = SYNC_INTERVALS.get(SyncFrequency(organizer.sync_frequency), timedelta(0))
        return now - organizer.last_calendar_sync >= interval

    async def sync_confirmed(
        self, organizer: OrganizerProfile, now: datetime | None = None, force: bool = False
    ) -> dict:
        """
        Create external events for confirmed, unsynced, future reservations.

        Transient provider failures leave the reservation unsynced for the
        next run; permanent failures are reported in `errors`.
        """
        now = now or datetime.now(UTC)
        result = {"organizer_id": organizer.id, "synced": 0, "skipped": False, "errors": []}

        if not organizer.calendar_account_ref:
            result["skipped"] = True
            return result
        if not force and not self.is_due(organizer, now):
            result["skipped"] = True
            return result

        reservations = await self.repository.list_unsynced_confirmed(organizer.id, now)
        contacts = {
            contact.id: contact
            for contact in await self.repository.get_contacts(
                organizer.id, [reservation.contact_id for reservation in reservations]
            )
        }

        for reservation in reservations:
            contact = contacts.get(reservation.contact_id)
            name = contact.name if contact else "contact"
            try:
                event_ref = await self.provider.create_event(
                    organizer.calendar_account_ref,
                    reservation.interval,
                    contact.email if contact else None,
                    f"Coffee chat with {name}",
                    timezone_str=reservation.timezone,
                )
            except CalendarProviderError as e:
                logger.warning(
                    "Calendar sync failed for reservation",
                    organizer_id=organizer.id,
                    reservation_id=reservation.id,
                    transient=e.transient,
                    error=str(e),
                )
                if not e.transient:
                    result["errors"].append({"reservation_id": reservation.id, "error": str(e)})
                continue

            await self.repository.mark_reservation_synced(reservation.id, event_ref)
            result["synced"] += 1

        await self.repository.update_last_calendar_sync(organizer.id, now)
        logger.info(
            "Calendar sync finished",
            organizer_id=organizer.id,
            synced=result["synced"],
            errors=len(result["errors"]),
        )
        return result
