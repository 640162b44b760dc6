"""
Domain models for batch scheduling.

Lightweight dataclasses shared by the allocation pipeline, the reservation
lifecycle and the API layer. All datetimes are timezone-aware and compared
in UTC; local times are only derived for scoring and working-hour checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any

DEFAULT_BUFFER_MINUTES = 15


class SuggestionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    MEETING_SCHEDULED = "meeting_scheduled"
    CLEARED = "cleared"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


LIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ANY = "any"


class SyncFrequency(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"


# =========================================================================
# Time primitives
# =========================================================================


@dataclass(slots=True, frozen=True)
class TimeInterval:
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Interval end {self.end} must be after start {self.start}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: TimeInterval, buffer: timedelta = timedelta(0)) -> bool:
        """True when the intervals overlap or sit closer than `buffer` to each other."""
        return self.start < other.end + buffer and other.start < self.end + buffer

    def contains(self, other: TimeInterval) -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(slots=True, frozen=True)
class WorkingHours:
    """Daily working window in the owner's local time."""

    start: time = time(9, 0)
    end: time = time(17, 0)

    @classmethod
    def parse(cls, start: str, end: str) -> WorkingHours:
        """Build from "HH:MM" strings."""
        return cls(time.fromisoformat(start), time.fromisoformat(end))

    def widened(self, hours: int) -> WorkingHours:
        start_minutes = max(0, self.start.hour * 60 + self.start.minute - hours * 60)
        end_minutes = min(24 * 60 - 1, self.end.hour * 60 + self.end.minute + hours * 60)
        return WorkingHours(
            time(start_minutes // 60, start_minutes % 60),
            time(end_minutes // 60, end_minutes % 60),
        )


# =========================================================================
# Participants
# =========================================================================


@dataclass(slots=True)
class OrganizerProfile:
    id: str
    email: str
    timezone: str = "America/Los_Angeles"
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES
    weekend_availability: bool = False
    data_retention_days: int = 365  # -1 keeps everything forever
    calendar_account_ref: str | None = None
    sync_frequency: SyncFrequency = SyncFrequency.REALTIME
    last_calendar_sync: datetime | None = None


@dataclass(slots=True)
class ContactProfile:
    id: str
    organizer_id: str
    name: str
    email: str | None = None
    timezone: str = "America/Los_Angeles"
    preferred_time_of_day: TimeOfDay = TimeOfDay.ANY
    preferred_weekdays: tuple[int, ...] = ()  # Monday == 0
    working_hours: WorkingHours | None = None
    meeting_duration_minutes: int = 60
    calendar_account_ref: str | None = None


# =========================================================================
# Allocation pipeline
# =========================================================================


@dataclass(slots=True, frozen=True)
class CandidateSlot:
    contact_id: str
    start: datetime
    end: datetime
    contact_timezone: str

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(self.start, self.end)


@dataclass(slots=True, frozen=True)
class ScoreFactor:
    name: str
    value: float


@dataclass(slots=True, frozen=True)
class ScoredSlot:
    """A candidate slot with its quality score (0-100) and contributing factors."""

    contact_id: str
    start: datetime
    end: datetime
    contact_timezone: str
    score: float
    score_factors: tuple[ScoreFactor, ...] = ()

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(self.start, self.end)

    def factors_dict(self) -> dict[str, float]:
        return {factor.name: factor.value for factor in self.score_factors}


@dataclass(slots=True)
class AvailabilityResult:
    status: str  # "ok" or "no_overlap"
    slots: list[CandidateSlot]
    availability_known: bool = True

    @property
    def no_overlap(self) -> bool:
        return self.status == "no_overlap"


@dataclass(slots=True)
class UnsatisfiedContact:
    contact_id: str
    reason: str


QualityMatrix = dict[str, list[ScoredSlot]]


@dataclass(slots=True)
class MatrixBuildResult:
    matrix: QualityMatrix
    unsatisfied: list[UnsatisfiedContact] = field(default_factory=list)
    relaxations: dict[str, list[str]] = field(default_factory=dict)
    unknown_availability: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Allocation:
    assignments: dict[str, list[ScoredSlot]]
    shortfalls: dict[str, int] = field(default_factory=dict)
    relaxation_levels: dict[str, str] = field(default_factory=dict)

    def satisfaction(self, contact_id: str) -> float:
        return sum(slot.score for slot in self.assignments.get(contact_id, []))


@dataclass(slots=True)
class LocalSearchResult:
    allocation: Allocation
    swaps: int
    iterations: int
    std_before: float
    std_after: float


@dataclass(slots=True)
class ScoringWeights:
    baseline: float = 60.0
    preferred_band: float = 15.0
    any_band: float = 5.0
    band_miss: float = -10.0
    band_decay_span: float = 25.0
    band_decay_hours: float = 2.0
    prime_hour: float = 10.0
    lunch_hour: float = -20.0
    off_hours: float = -40.0
    midweek: float = 5.0
    friday_consultant: float = 15.0
    weekend: float = -30.0
    preferred_weekday: float = 10.0
    density_per_meeting: float = -8.0
    density_cap: float = -30.0
    density_window_hours: float = 2.0
    fairness_step: float = 3.0
    fairness_max: float = 10.0


@dataclass(slots=True)
class BatchOptions:
    """Per-batch tunables. Defaults come from settings.get_scheduling_defaults()."""

    # None: use the organizer's own buffer, see for_organizer()
    buffer_minutes: int | None = None
    slot_step_minutes: int = 30
    viability_floor: float = 40.0
    overcommit_margin: int = 2
    lookahead_weight: float = 1.0
    lookahead_limit: int = 10
    same_day_penalty: float = 5.0
    iteration_budget_per_contact: int = 25
    relaxed_window_hours: int = 2
    fallback_extension_days: int = 7
    consultant_mode: bool = True
    include_weekends: bool | None = None
    weights: ScoringWeights = field(default_factory=ScoringWeights)

    @classmethod
    def from_defaults(cls, defaults: dict[str, Any], **overrides: Any) -> BatchOptions:
        values = {**defaults, **{k: v for k, v in overrides.items() if v is not None}}
        return cls(**values)

    def for_organizer(self, organizer: OrganizerProfile) -> BatchOptions:
        if self.buffer_minutes is not None:
            return self
        return replace(self, buffer_minutes=organizer.buffer_minutes)

    @property
    def buffer(self) -> timedelta:
        minutes = self.buffer_minutes
        return timedelta(minutes=DEFAULT_BUFFER_MINUTES if minutes is None else minutes)


# =========================================================================
# Persisted lifecycle records
# =========================================================================


@dataclass(slots=True)
class SuggestedSlot:
    start: datetime
    end: datetime
    score: float
    expires_at: datetime
    selected: bool = False
    score_factors: dict[str, float] = field(default_factory=dict)

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(self.start, self.end)


@dataclass(slots=True)
class SuggestionSet:
    id: str
    organizer_id: str
    contact_id: str
    batch_id: str
    slots: list[SuggestedSlot]
    status: SuggestionStatus
    created_at: datetime

    def find_slot(self, interval: TimeInterval) -> SuggestedSlot | None:
        for slot in self.slots:
            if slot.start == interval.start and slot.end == interval.end:
                return slot
        return None


@dataclass(slots=True)
class Reservation:
    id: str
    organizer_id: str
    contact_id: str
    batch_id: str
    start: datetime
    end: datetime
    timezone: str
    status: ReservationStatus
    expires_at: datetime
    created_at: datetime
    suggestion_set_id: str | None = None
    synced_to_external_calendar: bool = False
    external_event_ref: str | None = None

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(self.start, self.end)


@dataclass(slots=True)
class CleanupResult:
    organizer_id: str
    expired_pending_reservations: int = 0
    expired_confirmed_reservations: int = 0
    expired_suggestion_sets: int = 0
    deleted_suggestion_sets: int = 0
    deleted_reservations: int = 0
    retention_skipped: bool = False

    @property
    def total_changes(self) -> int:
        return (
            self.expired_pending_reservations
            + self.expired_confirmed_reservations
            + self.expired_suggestion_sets
            + self.deleted_suggestion_sets
            + self.deleted_reservations
        )
