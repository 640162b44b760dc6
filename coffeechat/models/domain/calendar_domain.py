"""
Calendar Domain Models
Parsing helpers for Google Calendar payloads used by the calendar client.
"""

from datetime import UTC, datetime

from coffeechat.features.batch_scheduling.domain.models import TimeInterval


def parse_calendar_datetime(value: str | None) -> datetime | None:
    """Parse an RFC3339 timestamp as returned by the Calendar API."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_busy_periods(periods: list[dict]) -> list[TimeInterval]:
    """Convert freeBusy `busy` entries into sorted, merged TimeIntervals."""
    intervals = []
    for period in periods:
        start = parse_calendar_datetime(period.get("start"))
        end = parse_calendar_datetime(period.get("end"))
        if start is None or end is None or end <= start:
            continue
        intervals.append(TimeInterval(start, end))

    intervals.sort(key=lambda interval: interval.start)
    merged: list[TimeInterval] = []
    for interval in intervals:
        if merged and interval.start <= merged[-1].end:
            last = merged.pop()
            merged.append(TimeInterval(last.start, max(last.end, interval.end)))
        else:
            merged.append(interval)
    return merged


class CalendarEvent:
    """Domain model for a created calendar event."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.summary = data.get("summary", "")
        self.status = data.get("status", "confirmed")
        self.html_link = data.get("htmlLink")
        self.start_time = self._parse_datetime(data.get("start", {}))
        self.end_time = self._parse_datetime(data.get("end", {}))
        self.attendees = [a.get("email") for a in data.get("attendees", []) if a.get("email")]
        self.raw_data = data

    def _parse_datetime(self, dt_data: dict) -> datetime | None:
        if not dt_data:
            return None
        if "date" in dt_data:
            return datetime.strptime(dt_data["date"], "%Y-%m-%d").replace(tzinfo=UTC)
        return parse_calendar_datetime(dt_data.get("dateTime"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "summary": self.summary,
            "status": self.status,
            "html_link": self.html_link,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "attendees": self.attendees,
        }
