"""
Quality matrix package.
"""

from .builder import ContactScheduleInput, build_quality_matrix, score_viable_slots, sort_key

__all__ = ["ContactScheduleInput", "build_quality_matrix", "score_viable_slots", "sort_key"]
