import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from coffeechat.auth.verify import auth_dependency
from coffeechat.features.batch_scheduling.domain.errors import ConflictError
from coffeechat.features.batch_scheduling.domain.models import (
    LIVE_RESERVATION_STATUSES,
    ContactProfile,
    OrganizerProfile,
    ReservationStatus,
    ScoredSlot,
    SuggestionStatus,
    TimeInterval,
)
from coffeechat.features.batch_scheduling.services.batch_service import BatchSchedulingService
from coffeechat.features.batch_scheduling.services.reservation_service import ReservationService

# Monday
MONDAY = datetime(2030, 3, 4, tzinfo=UTC)


def _at(day: int, hour: int = 0, minute: int = 0) -> datetime:
    return MONDAY + timedelta(days=day, hours=hour, minutes=minute)


def _scored(contact_id: str, day: int, hour: int, score: float, minutes: int = 60) -> ScoredSlot:
    start = _at(day, hour)
    return ScoredSlot(
        contact_id=contact_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        contact_timezone="UTC",
        score=score,
    )


@pytest.fixture
def at():
    """UTC datetime `day` days after Monday 2030-03-04."""
    return _at


@pytest.fixture
def scored_slot():
    return _scored


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "org-1"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class InMemorySchedulingRepository:
    """Dict-backed stand-in for SchedulingRepository with the same method surface."""

    def __init__(self):
        self.organizers: dict[str, OrganizerProfile] = {}
        self.contacts: dict[tuple[str, str], ContactProfile] = {}
        self.suggestion_sets = {}
        self.reservations = {}
        self.commit_calls = 0
        self._commit_lock = asyncio.Lock()

    def add_organizer(self, organizer: OrganizerProfile) -> OrganizerProfile:
        self.organizers[organizer.id] = organizer
        return organizer

    def add_contact(self, contact: ContactProfile) -> ContactProfile:
        self.contacts[(contact.organizer_id, contact.id)] = contact
        return contact

    def remove_contact(self, organizer_id: str, contact_id: str) -> None:
        self.contacts.pop((organizer_id, contact_id), None)

    # Organizers and contacts

    async def get_organizer(self, organizer_id):
        return self.organizers.get(organizer_id)

    async def list_organizers(self):
        return [self.organizers[key] for key in sorted(self.organizers)]

    async def get_contacts(self, organizer_id, contact_ids):
        return [
            self.contacts[(organizer_id, cid)]
            for cid in contact_ids
            if (organizer_id, cid) in self.contacts
        ]

    async def get_contact(self, organizer_id, contact_id):
        return self.contacts.get((organizer_id, contact_id))

    # Time already taken

    def _live(self, organizer_id):
        return [
            r
            for r in self.reservations.values()
            if r.organizer_id == organizer_id and r.status in LIVE_RESERVATION_STATUSES
        ]

    async def list_committed_intervals(self, organizer_id, start, end):
        return sorted(
            (r.interval for r in self._live(organizer_id) if r.start < end and r.end > start),
            key=lambda interval: interval.start,
        )

    async def list_active_suggestion_intervals(self, organizer_id, start, end, now):
        return sorted(
            (
                slot.interval
                for s in self.suggestion_sets.values()
                if s.organizer_id == organizer_id and s.status is SuggestionStatus.ACTIVE
                for slot in s.slots
                if slot.expires_at > now and slot.start < end and slot.end > start
            ),
            key=lambda interval: interval.start,
        )

    # Suggestion sets

    async def save_suggestion_sets(self, suggestion_sets):
        for suggestion_set in suggestion_sets:
            self.suggestion_sets[suggestion_set.id] = suggestion_set

    async def get_suggestion_set(self, organizer_id, batch_id, contact_id):
        for s in self.suggestion_sets.values():
            if (s.organizer_id, s.batch_id, s.contact_id) == (organizer_id, batch_id, contact_id):
                return s
        return None

    async def list_suggestion_sets(self, organizer_id, batch_id):
        return sorted(
            (
                s
                for s in self.suggestion_sets.values()
                if s.organizer_id == organizer_id and s.batch_id == batch_id
            ),
            key=lambda s: s.contact_id,
        )

    async def set_suggestion_set_status(self, organizer_id, suggestion_set_id, status):
        s = self.suggestion_sets.get(suggestion_set_id)
        if s is None or s.organizer_id != organizer_id:
            return False
        s.status = status
        return True

    async def clear_batch(self, organizer_id, batch_id):
        cleared = 0
        for s in self.suggestion_sets.values():
            if (
                s.organizer_id == organizer_id
                and s.batch_id == batch_id
                and s.status is SuggestionStatus.ACTIVE
            ):
                s.status = SuggestionStatus.CLEARED
                cleared += 1
        return cleared

    # Atomic commit

    async def commit_reservation(self, reservation, suggestion_set_id):
        self.commit_calls += 1
        async with self._commit_lock:
            # Let a concurrent caller queue up on the lock
            await asyncio.sleep(0)
            s = self.suggestion_sets.get(suggestion_set_id)
            if s is None or s.status is not SuggestionStatus.ACTIVE:
                status = s.status.value if s else "missing"
                raise ConflictError("Suggestion set is no longer active", reason=f"set_{status}")
            if any(
                reservation.interval.overlaps(r.interval)
                for r in self._live(reservation.organizer_id)
            ):
                raise ConflictError("Slot overlaps an existing reservation")

            self.reservations[reservation.id] = reservation
            for slot in s.slots:
                if slot.start == reservation.start and slot.end == reservation.end:
                    slot.selected = True
            s.status = SuggestionStatus.MEETING_SCHEDULED
            return reservation

    # Reservations

    async def get_reservation(self, organizer_id, reservation_id):
        r = self.reservations.get(reservation_id)
        return r if r is not None and r.organizer_id == organizer_id else None

    async def list_reservations(self, organizer_id, batch_id):
        return sorted(
            (
                r
                for r in self.reservations.values()
                if r.organizer_id == organizer_id and r.batch_id == batch_id
            ),
            key=lambda r: r.start,
        )

    async def transition_reservation(self, organizer_id, reservation_id, from_statuses, to_status):
        r = await self.get_reservation(organizer_id, reservation_id)
        if r is None or r.status not in from_statuses:
            return None
        updated = replace(r, status=to_status)
        self.reservations[reservation_id] = updated
        return updated

    # Expiry and retention

    def _update_reservations(self, organizer_id, predicate, status):
        changed = 0
        for rid, r in list(self.reservations.items()):
            if r.organizer_id == organizer_id and predicate(r):
                self.reservations[rid] = replace(r, status=status)
                changed += 1
        return changed

    async def expire_pending_reservations(self, organizer_id, now):
        return self._update_reservations(
            organizer_id,
            lambda r: r.status is ReservationStatus.PENDING and r.expires_at <= now,
            ReservationStatus.EXPIRED,
        )

    async def expire_finished_reservations(self, organizer_id, now):
        return self._update_reservations(
            organizer_id,
            lambda r: r.status is ReservationStatus.CONFIRMED and r.end <= now,
            ReservationStatus.EXPIRED,
        )

    async def expire_stale_suggestion_sets(self, organizer_id, now):
        changed = 0
        for s in self.suggestion_sets.values():
            if (
                s.organizer_id == organizer_id
                and s.status is SuggestionStatus.ACTIVE
                and not any(slot.expires_at > now for slot in s.slots)
            ):
                s.status = SuggestionStatus.EXPIRED
                changed += 1
        return changed

    async def delete_suggestion_sets_past_grace(self, organizer_id, cutoff):
        doomed = [
            sid
            for sid, s in self.suggestion_sets.items()
            if s.organizer_id == organizer_id
            and s.status in (SuggestionStatus.EXPIRED, SuggestionStatus.CLEARED)
            and not any(slot.expires_at >= cutoff for slot in s.slots)
        ]
        for sid in doomed:
            del self.suggestion_sets[sid]
        return len(doomed)

    async def delete_reservations_before(self, organizer_id, cutoff):
        doomed = [
            rid
            for rid, r in self.reservations.items()
            if r.organizer_id == organizer_id
            and r.status in (ReservationStatus.EXPIRED, ReservationStatus.CANCELLED)
            and r.end < cutoff
        ]
        for rid in doomed:
            del self.reservations[rid]
        return len(doomed)

    # External calendar sync

    async def list_unsynced_confirmed(self, organizer_id, now):
        return sorted(
            (
                r
                for r in self.reservations.values()
                if r.organizer_id == organizer_id
                and r.status is ReservationStatus.CONFIRMED
                and not r.synced_to_external_calendar
                and r.start > now
            ),
            key=lambda r: r.start,
        )

    async def mark_reservation_synced(self, reservation_id, external_event_ref):
        r = self.reservations[reservation_id]
        self.reservations[reservation_id] = replace(
            r, synced_to_external_calendar=True, external_event_ref=external_event_ref
        )

    async def update_last_calendar_sync(self, organizer_id, synced_at):
        self.organizers[organizer_id].last_calendar_sync = synced_at


class FakeCalendarProvider:
    def __init__(self):
        self.busy: dict[str, list[TimeInterval]] = {}
        self.failures: dict[str, Exception] = {}
        self.created_events: list[dict] = []
        self.on_fetch = None

    async def get_busy_intervals(self, account_ref, start, end):
        if self.on_fetch is not None:
            self.on_fetch(account_ref)
        if account_ref in self.failures:
            raise self.failures[account_ref]
        return [i for i in self.busy.get(account_ref, []) if i.start < end and i.end > start]

    async def create_event(self, account_ref, interval, attendee, summary, timezone_str="UTC"):
        if account_ref in self.failures:
            raise self.failures[account_ref]
        self.created_events.append(
            {"account_ref": account_ref, "interval": interval, "attendee": attendee}
        )
        return f"evt-{len(self.created_events)}"


@pytest.fixture
def repository():
    return InMemorySchedulingRepository()


@pytest.fixture
def calendar_provider():
    return FakeCalendarProvider()


@pytest.fixture
def organizer(repository):
    return repository.add_organizer(
        OrganizerProfile(id="org-1", email="host@example.com", timezone="UTC")
    )


@pytest.fixture
def make_contact(repository, organizer):
    def _make(contact_id: str, **overrides) -> ContactProfile:
        values = {
            "id": contact_id,
            "organizer_id": organizer.id,
            "name": contact_id.title(),
            "email": f"{contact_id}@example.com",
            "timezone": "UTC",
        }
        values.update(overrides)
        return repository.add_contact(ContactProfile(**values))

    return _make


@pytest.fixture
def reservations(repository):
    return ReservationService(repository=repository)


@pytest.fixture
def batch_service(calendar_provider, repository, reservations):
    return BatchSchedulingService(
        provider=calendar_provider, repository=repository, reservations=reservations
    )
