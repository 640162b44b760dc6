"""
Slot quality scoring - rates a candidate slot for one contact on a 0-100 scale.

The score is a baseline plus a weighted sum of independent factors. Every
factor is kept on the ScoredSlot so the API can explain a suggestion.
"""

from __future__ import annotations

import math
from datetime import datetime
from zoneinfo import ZoneInfo

from coffeechat.features.batch_scheduling.domain.models import (
    CandidateSlot,
    ContactProfile,
    ScoredSlot,
    ScoreFactor,
    ScoringWeights,
    TimeOfDay,
)
from coffeechat.infrastructure.observability.logging import get_logger

from .fairness import FairnessState, slot_class

logger = get_logger(__name__)


class QualityScorer:
    MIN_SCORE = 0.0
    MAX_SCORE = 100.0
    # Preferred bands in contact-local hours, [start, end)
    BANDS = {
        TimeOfDay.MORNING: (8.0, 12.0),
        TimeOfDay.AFTERNOON: (12.0, 17.0),
        TimeOfDay.EVENING: (17.0, 21.0),
    }
    NORMAL_HOURS = (9, 17)
    PRIME_HOURS = {10, 11, 14, 15, 16}
    LUNCH_HOURS = {12, 13}

    def __init__(self, weights: ScoringWeights | None = None, consultant_mode: bool = True):
        self.weights = weights or ScoringWeights()
        self.consultant_mode = consultant_mode

    def score(
        self,
        candidate: CandidateSlot,
        contact: ContactProfile,
        fairness_state: FairnessState | None = None,
        density: int = 0,
    ) -> ScoredSlot:
        """
        Score one candidate slot.

        Args:
            candidate: Open slot produced by the normalizer
            contact: Contact whose preferences apply
            fairness_state: Batch fairness state (None disables the factor)
            density: Organizer commitments near the slot

        Returns:
            ScoredSlot with score clipped to [0, 100] and ordered factors
        """
        local = candidate.start.astimezone(ZoneInfo(candidate.contact_timezone))

        factors = [
            ScoreFactor("time_of_day", self._score_time_of_day(local, contact)),
            ScoreFactor("hour_quality", self._score_hour(local)),
            ScoreFactor("weekday", self._score_weekday(local, contact)),
            ScoreFactor("density", self._score_density(density)),
        ]
        if fairness_state is not None:
            cls = slot_class(candidate.start, candidate.contact_timezone)
            factors.append(ScoreFactor("fairness", round(fairness_state.adjustment(cls), 2)))

        raw = self.weights.baseline + sum(factor.value for factor in factors)
        score = max(self.MIN_SCORE, min(self.MAX_SCORE, raw))

        return ScoredSlot(
            contact_id=candidate.contact_id,
            start=candidate.start,
            end=candidate.end,
            contact_timezone=candidate.contact_timezone,
            score=round(score, 2),
            score_factors=tuple(factors),
        )

    # =======================================================================
    # FACTORS
    # =======================================================================

    def _score_time_of_day(self, local: datetime, contact: ContactProfile) -> float:
        preference = TimeOfDay(contact.preferred_time_of_day)
        if preference is TimeOfDay.ANY:
            return self.weights.any_band

        band_start, band_end = self.BANDS[preference]
        hour = local.hour + local.minute / 60
        if band_start <= hour < band_end:
            return self.weights.preferred_band

        distance = band_start - hour if hour < band_start else hour - band_end
        decay = math.exp(-distance / self.weights.band_decay_hours)
        return round(self.weights.band_miss + self.weights.band_decay_span * decay, 2)

    def _score_hour(self, local: datetime) -> float:
        hour = local.hour
        start, end = self.NORMAL_HOURS
        if not start <= hour < end:
            return self.weights.off_hours
        if hour in self.PRIME_HOURS:
            return self.weights.prime_hour
        if hour in self.LUNCH_HOURS:
            return self.weights.lunch_hour
        return 0.0

    def _score_weekday(self, local: datetime, contact: ContactProfile) -> float:
        weekday = local.weekday()
        if weekday >= 5:
            value = self.weights.weekend
        elif weekday == 0:
            value = 0.0
        elif weekday == 4 and self.consultant_mode:
            value = self.weights.friday_consultant
        else:
            value = self.weights.midweek

        if weekday in contact.preferred_weekdays:
            value += self.weights.preferred_weekday
        return value

    def _score_density(self, density: int) -> float:
        if density <= 0:
            return 0.0
        return max(self.weights.density_cap, self.weights.density_per_meeting * density)
