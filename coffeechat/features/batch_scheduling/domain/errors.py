"""
Exceptions raised by the batch scheduling feature.

Routers translate these into HTTP responses; jobs log them and move on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SuggestedSlot


class SchedulingError(Exception):
    """Base class for scheduling failures."""

    error_code = "scheduling_error"

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class SchedulingInputError(SchedulingError):
    """Malformed batch request. Never retried."""

    error_code = "invalid_input"


class NoViableSlotsError(SchedulingError):
    """A contact ended up with no slot above the viability floor."""

    error_code = "no_viable_slots"

    def __init__(self, contact_id: str, reason: str):
        super().__init__(f"No viable slots for contact {contact_id}: {reason}")
        self.contact_id = contact_id
        self.reason = reason


class CalendarProviderError(SchedulingError):
    """Busy-interval fetch or event creation failed at the calendar provider."""

    error_code = "calendar_provider_error"

    def __init__(self, message: str, transient: bool, status_code: int | None = None):
        super().__init__(message, recoverable=transient)
        self.transient = transient
        self.status_code = status_code


class ConflictError(SchedulingError):
    """The chosen slot was taken by a concurrent commit or is no longer selectable."""

    error_code = "slot_conflict"

    def __init__(
        self,
        message: str,
        remaining_slots: list[SuggestedSlot] | None = None,
        reason: str = "overlap",
    ):
        super().__init__(message, recoverable=True)
        self.remaining_slots = remaining_slots or []
        self.reason = reason


class ConsistencyError(SchedulingError):
    """Stored records contradict each other (e.g. a suggestion for a deleted contact)."""

    error_code = "consistency_error"


class BatchCancelledError(SchedulingError):
    error_code = "batch_cancelled"

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} was cancelled")
        self.batch_id = batch_id


class SuggestionNotFoundError(SchedulingError):
    error_code = "suggestion_not_found"


class ReservationNotFoundError(SchedulingError):
    error_code = "reservation_not_found"
