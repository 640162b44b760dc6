"""
Calendar provider contract consumed by the scheduler.
"""

from datetime import datetime
from typing import Protocol

from coffeechat.features.batch_scheduling.domain.models import TimeInterval


class CalendarProvider(Protocol):
    """Busy/free reads and event writes against an external calendar.

    Implementations raise CalendarProviderError with `transient` set when a
    retry later could succeed.
    """

    async def get_busy_intervals(
        self, account_ref: str, start: datetime, end: datetime
    ) -> list[TimeInterval]:
        """Busy intervals for the account in [start, end)."""

    async def create_event(
        self,
        account_ref: str,
        interval: TimeInterval,
        attendee: str | None,
        summary: str,
        timezone_str: str = "UTC",
    ) -> str:
        """Create an event and return the provider's event reference."""
