"""
Availability package.

Normalizes organizer and contact busy data plus working hours into
fixed-length candidate slots.
"""

from .normalizer import AvailabilityRequest, normalize_availability

__all__ = ["AvailabilityRequest", "normalize_availability"]
