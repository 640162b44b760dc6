"""
Domain subpackage for batch scheduling.
"""

from .errors import (
    BatchCancelledError,
    CalendarProviderError,
    ConflictError,
    ConsistencyError,
    NoViableSlotsError,
    ReservationNotFoundError,
    SchedulingError,
    SchedulingInputError,
    SuggestionNotFoundError,
)
from .models import (
    Allocation,
    AvailabilityResult,
    BatchOptions,
    CandidateSlot,
    CleanupResult,
    ContactProfile,
    LocalSearchResult,
    MatrixBuildResult,
    OrganizerProfile,
    QualityMatrix,
    Reservation,
    ReservationStatus,
    ScoredSlot,
    ScoreFactor,
    ScoringWeights,
    SuggestedSlot,
    SuggestionSet,
    SuggestionStatus,
    SyncFrequency,
    TimeInterval,
    TimeOfDay,
    UnsatisfiedContact,
    WorkingHours,
)

__all__ = [
    "Allocation",
    "AvailabilityResult",
    "BatchCancelledError",
    "BatchOptions",
    "CalendarProviderError",
    "CandidateSlot",
    "CleanupResult",
    "ConflictError",
    "ConsistencyError",
    "ContactProfile",
    "LocalSearchResult",
    "MatrixBuildResult",
    "NoViableSlotsError",
    "OrganizerProfile",
    "QualityMatrix",
    "Reservation",
    "ReservationNotFoundError",
    "ReservationStatus",
    "SchedulingError",
    "SchedulingInputError",
    "ScoredSlot",
    "ScoreFactor",
    "ScoringWeights",
    "SuggestedSlot",
    "SuggestionNotFoundError",
    "SuggestionSet",
    "SuggestionStatus",
    "SyncFrequency",
    "TimeInterval",
    "TimeOfDay",
    "UnsatisfiedContact",
    "WorkingHours",
]
