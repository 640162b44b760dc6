"""
Per-batch fairness state threaded through the quality matrix build.

A slot's class is its contact-local weekday and time-of-day band. Classes
already handed to earlier contacts in the batch get nudged down and unused
classes get nudged up, so whichever contact is processed first does not
take every Tuesday morning.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from zoneinfo import ZoneInfo

from coffeechat.features.batch_scheduling.domain.models import ScoredSlot

SlotClass = tuple[int, str]


def time_of_day_bucket(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def slot_class(start: datetime, timezone: str) -> SlotClass:
    local = start.astimezone(ZoneInfo(timezone))
    return local.weekday(), time_of_day_bucket(local.hour)


@dataclass(slots=True)
class FairnessState:
    step: float = 3.0
    max_adjustment: float = 10.0
    class_counts: Counter = field(default_factory=Counter)
    contacts_recorded: int = 0
    score_total: float = 0.0

    @property
    def target_score(self) -> float | None:
        """Mean top-pick score of contacts processed so far."""
        if not self.contacts_recorded:
            return None
        return self.score_total / self.contacts_recorded

    def adjustment(self, cls: SlotClass) -> float:
        if not self.class_counts:
            return 0.0
        mean_count = sum(self.class_counts.values()) / len(self.class_counts)
        raw = self.step * (mean_count - self.class_counts.get(cls, 0))
        return max(-self.max_adjustment, min(self.max_adjustment, raw))

    def record(self, top_slots: Iterable[ScoredSlot]) -> None:
        slots = list(top_slots)
        if not slots:
            return
        for slot in slots:
            self.class_counts[slot_class(slot.start, slot.contact_timezone)] += 1
        self.contacts_recorded += 1
        self.score_total += sum(slot.score for slot in slots) / len(slots)
