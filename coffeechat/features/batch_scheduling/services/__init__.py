"""
Service layer for batch scheduling.
"""

from coffeechat.services.calendar.google_client import google_calendar_service

from .batch_service import BatchResult, BatchSchedulingService, ContactSuggestions
from .calendar_provider import CalendarProvider
from .reservation_service import ReservationService, reservation_service
from .sync_service import CalendarSyncService

batch_scheduling_service = BatchSchedulingService(
    provider=google_calendar_service, reservations=reservation_service
)
calendar_sync_service = CalendarSyncService(provider=google_calendar_service)

__all__ = [
    "BatchResult",
    "BatchSchedulingService",
    "CalendarProvider",
    "CalendarSyncService",
    "ContactSuggestions",
    "ReservationService",
    "batch_scheduling_service",
    "calendar_sync_service",
    "reservation_service",
]
