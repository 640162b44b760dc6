"""
Scheduling API request models.
Used by routes for input validation.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator, model_validator


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BatchOptionsRequest(BaseModel):
    """Optional per-batch tuning. Unset fields fall back to server defaults."""

    consultant_mode: bool | None = Field(
        default=None, description="Boost Friday slots (consultants often work from home)"
    )
    include_weekends: bool | None = Field(
        default=None, description="Override the organizer's weekend availability"
    )
    buffer_minutes: int | None = Field(
        default=None, ge=0, le=120, description="Minimum gap to any busy interval"
    )
    viability_floor: float | None = Field(
        default=None, ge=0, le=100, description="Discard slots scoring below this"
    )
    lookahead_weight: float | None = Field(
        default=None, ge=0, le=10, description="How strongly to protect contacts still waiting"
    )
    iteration_budget_per_contact: int | None = Field(
        default=None, ge=0, le=1000, description="Fairness local search budget per contact"
    )


class GenerateBatchRequest(BaseModel):
    """Request for generating batch suggestions."""

    contact_ids: list[str] = Field(..., min_length=1, max_length=50, description="Contacts")
    duration_minutes: int = Field(default=60, ge=15, le=240, description="Meeting length")
    slots_per_contact: int = Field(default=3, ge=1, le=10, description="Slots per contact")
    start_date: datetime | None = Field(default=None, description="Range start (default: now)")
    end_date: datetime | None = Field(
        default=None, description="Range end (default: start + 14 days)"
    )
    options: BatchOptionsRequest | None = Field(default=None, description="Tuning overrides")

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class ConfirmSlotRequest(BaseModel):
    """Request for confirming one suggested slot."""

    contact_id: str = Field(..., min_length=1, description="Contact confirming the slot")
    start: datetime = Field(..., description="Suggested slot start")
    end: datetime = Field(..., description="Suggested slot end")

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def check_interval(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self
