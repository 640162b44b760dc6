"""
Repository layer for batch scheduling.
"""

from .scheduling_repository import SchedulingRepository

__all__ = ["SchedulingRepository"]
