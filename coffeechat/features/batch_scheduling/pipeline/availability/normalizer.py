"""
Availability normalizer - turns raw busy data and working hours into open slots.

For one organizer/contact pair it walks the organizer's local calendar days,
intersects the organizer's working window with the contact's working window
(both expressed in their own timezones), drops anything closer than the
buffer to a busy interval, and steps fixed-size slots through what is left.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from coffeechat.features.batch_scheduling.domain.models import (
    AvailabilityResult,
    CandidateSlot,
    TimeInterval,
    WorkingHours,
)
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONTACT_HOURS = WorkingHours()


@dataclass(slots=True)
class AvailabilityRequest:
    contact_id: str
    contact_timezone: str
    organizer_timezone: str
    organizer_hours: WorkingHours
    date_range: TimeInterval
    duration: timedelta
    organizer_busy: list[TimeInterval] = field(default_factory=list)
    # None means the contact's calendar could not be read: treat them as fully open.
    contact_busy: list[TimeInterval] | None = None
    contact_hours: WorkingHours | None = None
    buffer: timedelta = timedelta(minutes=15)
    slot_step: timedelta = timedelta(minutes=30)
    include_weekends: bool = False
    not_before: datetime | None = None


def _local_window(day: date, hours: WorkingHours, tz: ZoneInfo) -> TimeInterval | None:
    start = datetime.combine(day, hours.start, tzinfo=tz).astimezone(UTC)
    end = datetime.combine(day, hours.end, tzinfo=tz).astimezone(UTC)
    if end <= start:
        return None
    return TimeInterval(start, end)


def _intersect(a: TimeInterval, b: TimeInterval) -> TimeInterval | None:
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    if end <= start:
        return None
    return TimeInterval(start, end)


def _ceil_to_step(moment: datetime, step: timedelta) -> datetime:
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    offset = moment - midnight
    remainder = offset % step
    if not remainder:
        return moment
    return moment + (step - remainder)


def _is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def _shared_windows(request: AvailabilityRequest) -> tuple[list[TimeInterval], int, bool]:
    """
    Working windows shared by organizer and contact across the date range.

    Returns (windows, organizer working days seen, any overlap found). Overlap
    is judged on the raw working windows, before range clipping and busy data.
    """
    org_tz = ZoneInfo(request.organizer_timezone)
    contact_tz = ZoneInfo(request.contact_timezone)
    contact_hours = request.contact_hours or DEFAULT_CONTACT_HOURS

    windows: list[TimeInterval] = []
    working_days = 0
    any_overlap = False

    day = request.date_range.start.astimezone(org_tz).date()
    last_day = request.date_range.end.astimezone(org_tz).date()

    while day <= last_day:
        if request.include_weekends or not _is_weekend(day):
            org_window = _local_window(day, request.organizer_hours, org_tz)
            if org_window is not None:
                working_days += 1
                first = org_window.start.astimezone(contact_tz).date()
                last = org_window.end.astimezone(contact_tz).date()
                contact_day = first
                while contact_day <= last:
                    if request.include_weekends or not _is_weekend(contact_day):
                        contact_window = _local_window(contact_day, contact_hours, contact_tz)
                        shared = contact_window and _intersect(org_window, contact_window)
                        if shared is not None:
                            any_overlap = True
                            clipped = _intersect(shared, request.date_range)
                            if clipped is not None:
                                windows.append(clipped)
                    contact_day += timedelta(days=1)
        day += timedelta(days=1)

    return windows, working_days, any_overlap


def normalize_availability(request: AvailabilityRequest) -> AvailabilityResult:
    """
    Produce the ordered open slots for one contact.

    Each slot is exactly `duration` long, inside both working windows, and at
    least `buffer` away from every organizer and contact busy interval. Days
    yielding nothing are skipped. When the two working windows never overlap
    in absolute time the result status is "no_overlap".
    """
    availability_known = request.contact_busy is not None
    windows, working_days, any_overlap = _shared_windows(request)

    if working_days and not any_overlap:
        logger.debug(
            "No working-hour overlap between organizer and contact",
            contact_id=request.contact_id,
            organizer_timezone=request.organizer_timezone,
            contact_timezone=request.contact_timezone,
        )
        return AvailabilityResult(
            status="no_overlap", slots=[], availability_known=availability_known
        )

    busy = sorted(
        list(request.organizer_busy) + list(request.contact_busy or []),
        key=lambda interval: interval.start,
    )

    seen: set[datetime] = set()
    slots: list[CandidateSlot] = []
    for window in windows:
        cursor = window.start
        if request.not_before is not None and cursor < request.not_before:
            cursor = request.not_before
        cursor = _ceil_to_step(cursor, request.slot_step)

        while cursor + request.duration <= window.end:
            candidate = TimeInterval(cursor, cursor + request.duration)
            blocked = any(candidate.overlaps(interval, request.buffer) for interval in busy)
            if not blocked and cursor not in seen:
                seen.add(cursor)
                slots.append(
                    CandidateSlot(
                        contact_id=request.contact_id,
                        start=candidate.start,
                        end=candidate.end,
                        contact_timezone=request.contact_timezone,
                    )
                )
            cursor += request.slot_step

    slots.sort(key=lambda slot: slot.start)
    return AvailabilityResult(status="ok", slots=slots, availability_known=availability_known)
