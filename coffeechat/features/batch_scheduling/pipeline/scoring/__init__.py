"""
Slot scoring package.

Rates candidate slots per contact and keeps the per-batch fairness state
that discourages handing every contact the same kind of slot.
"""

from .fairness import FairnessState, slot_class, time_of_day_bucket
from .service import QualityScorer

__all__ = ["FairnessState", "QualityScorer", "slot_class", "time_of_day_bucket"]
