"""
Scheduling API response models.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from coffeechat.features.batch_scheduling.domain.models import (
    Reservation,
    SuggestedSlot,
    SuggestionSet,
)


class SuggestedSlotResponse(BaseModel):
    start: datetime
    end: datetime
    score: float = Field(..., ge=0, le=100)
    expires_at: datetime
    selected: bool = False
    score_factors: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, slot: SuggestedSlot) -> "SuggestedSlotResponse":
        return cls(
            start=slot.start,
            end=slot.end,
            score=slot.score,
            expires_at=slot.expires_at,
            selected=slot.selected,
            score_factors=slot.score_factors,
        )


class ContactSuggestionsResponse(BaseModel):
    contact_id: str
    suggested_slots: list[SuggestedSlotResponse]


class UnsatisfiedContactResponse(BaseModel):
    contact_id: str
    reason: str


class BatchSuggestionsResponse(BaseModel):
    """Result of GenerateBatchSuggestions."""

    batch_id: str
    per_contact: list[ContactSuggestionsResponse]
    unsatisfied_contacts: list[UnsatisfiedContactResponse]
    statistics: dict[str, Any] = Field(default_factory=dict)


class SuggestionSetResponse(BaseModel):
    id: str
    contact_id: str
    status: str
    created_at: datetime
    slots: list[SuggestedSlotResponse]

    @classmethod
    def from_domain(cls, suggestion_set: SuggestionSet) -> "SuggestionSetResponse":
        return cls(
            id=suggestion_set.id,
            contact_id=suggestion_set.contact_id,
            status=suggestion_set.status.value,
            created_at=suggestion_set.created_at,
            slots=[SuggestedSlotResponse.from_domain(slot) for slot in suggestion_set.slots],
        )


class ReservationResponse(BaseModel):
    id: str
    contact_id: str
    batch_id: str
    start: datetime
    end: datetime
    timezone: str
    status: str
    expires_at: datetime
    synced_to_external_calendar: bool = False
    external_event_ref: str | None = None

    @classmethod
    def from_domain(cls, reservation: Reservation) -> "ReservationResponse":
        return cls(
            id=reservation.id,
            contact_id=reservation.contact_id,
            batch_id=reservation.batch_id,
            start=reservation.start,
            end=reservation.end,
            timezone=reservation.timezone,
            status=reservation.status.value,
            expires_at=reservation.expires_at,
            synced_to_external_calendar=reservation.synced_to_external_calendar,
            external_event_ref=reservation.external_event_ref,
        )


class BatchDetailResponse(BaseModel):
    batch_id: str
    suggestion_sets: list[SuggestionSetResponse]
    reservations: list[ReservationResponse]


class ClearSuggestionsResponse(BaseModel):
    batch_id: str
    cleared: int


class CancelBatchResponse(BaseModel):
    batch_id: str
    cancelled: bool


class CleanupResponse(BaseModel):
    organizer_id: str
    expired_pending_reservations: int
    expired_confirmed_reservations: int
    expired_suggestion_sets: int
    deleted_suggestion_sets: int
    deleted_reservations: int
    retention_skipped: bool
