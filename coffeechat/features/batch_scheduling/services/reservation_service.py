"""
Reservation lifecycle - suggestion persistence, atomic slot confirmation,
clearing and expiry cleanup.

State machines:
    SuggestionSet: active -> meeting_scheduled | cleared | expired
    Reservation:   pending -> confirmed | expired | cancelled
                   confirmed -> expired | cancelled
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

from coffeechat.config import settings
from coffeechat.features.batch_scheduling.domain.errors import (
    ConflictError,
    ConsistencyError,
    ReservationNotFoundError,
    SchedulingInputError,
    SuggestionNotFoundError,
)
from coffeechat.features.batch_scheduling.domain.models import (
    LIVE_RESERVATION_STATUSES,
    Allocation,
    CleanupResult,
    Reservation,
    ReservationStatus,
    SuggestedSlot,
    SuggestionSet,
    SuggestionStatus,
    TimeInterval,
)
from coffeechat.features.batch_scheduling.repository import SchedulingRepository
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ReservationService:
    def __init__(
        self,
        repository=SchedulingRepository,
        suggestion_expiry: timedelta | None = None,
        pending_ttl: timedelta | None = None,
        suggestion_grace: timedelta | None = None,
    ):
        self.repository = repository
        self.suggestion_expiry = suggestion_expiry or timedelta(
            hours=settings.SUGGESTION_EXPIRY_HOURS
        )
        self.pending_ttl = pending_ttl or timedelta(days=settings.PENDING_RESERVATION_TTL_DAYS)
        self.suggestion_grace = suggestion_grace or timedelta(days=settings.SUGGESTION_GRACE_DAYS)

    # =======================================================================
    # SUGGESTIONS
    # =======================================================================

    async def persist_suggestions(
        self,
        organizer_id: str,
        batch_id: str,
        allocation: Allocation,
        now: datetime | None = None,
    ) -> list[SuggestionSet]:
        """Store one active SuggestionSet per contact that received at least one slot."""
        now = now or datetime.now(UTC)
        suggestion_sets = []
        for contact_id, slots in allocation.assignments.items():
            if not slots:
                continue
            suggestion_sets.append(
                SuggestionSet(
                    id=str(uuid.uuid4()),
                    organizer_id=organizer_id,
                    contact_id=contact_id,
                    batch_id=batch_id,
                    slots=[
                        SuggestedSlot(
                            start=slot.start,
                            end=slot.end,
                            score=slot.score,
                            expires_at=slot.start - self.suggestion_expiry,
                            score_factors=slot.factors_dict(),
                        )
                        for slot in slots
                    ],
                    status=SuggestionStatus.ACTIVE,
                    created_at=now,
                )
            )

        await self.repository.save_suggestion_sets(suggestion_sets)
        logger.info(
            "Suggestions persisted",
            organizer_id=organizer_id,
            batch_id=batch_id,
            set_count=len(suggestion_sets),
        )
        return suggestion_sets

    async def list_batch(
        self, organizer_id: str, batch_id: str
    ) -> tuple[list[SuggestionSet], list[Reservation]]:
        suggestion_sets = await self.repository.list_suggestion_sets(organizer_id, batch_id)
        reservations = await self.repository.list_reservations(organizer_id, batch_id)
        if not suggestion_sets and not reservations:
            raise SuggestionNotFoundError(f"Batch {batch_id} not found")
        return suggestion_sets, reservations

    async def clear_suggestions(self, organizer_id: str, batch_id: str) -> int:
        """Clear every active set of the batch. A repeated call changes nothing."""
        cleared = await self.repository.clear_batch(organizer_id, batch_id)
        logger.info(
            "Suggestions cleared", organizer_id=organizer_id, batch_id=batch_id, cleared=cleared
        )
        return cleared

    async def quarantine_suggestion_set(self, suggestion_set: SuggestionSet, reason: str) -> None:
        await self.repository.set_suggestion_set_status(
            suggestion_set.organizer_id, suggestion_set.id, SuggestionStatus.CLEARED
        )
        logger.error(
            "Suggestion set quarantined",
            organizer_id=suggestion_set.organizer_id,
            suggestion_set_id=suggestion_set.id,
            contact_id=suggestion_set.contact_id,
            reason=reason,
        )

    # =======================================================================
    # CONFIRMATION
    # =======================================================================

    async def confirm_slot(
        self,
        organizer_id: str,
        contact_id: str,
        batch_id: str,
        chosen: TimeInterval,
        now: datetime | None = None,
    ) -> Reservation:
        """
        Convert one suggested slot into a pending Reservation.

        Raises:
            SuggestionNotFoundError: no suggestion set for (batch, contact)
            SchedulingInputError: chosen interval is not one of the suggested slots
            ConsistencyError: the contact no longer exists; the set is quarantined
            ConflictError: slot expired, set not active, or lost the race;
                carries the slots that are still selectable
        """
        now = now or datetime.now(UTC)
        suggestion_set = await self.repository.get_suggestion_set(
            organizer_id, batch_id, contact_id
        )
        if suggestion_set is None:
            raise SuggestionNotFoundError(
                f"No suggestions for contact {contact_id} in batch {batch_id}"
            )

        contact = await self.repository.get_contact(organizer_id, contact_id)
        if contact is None:
            await self.quarantine_suggestion_set(suggestion_set, reason="contact_missing")
            raise ConsistencyError(f"Contact {contact_id} no longer exists")

        slot = suggestion_set.find_slot(chosen)
        if slot is None:
            raise SchedulingInputError("Chosen slot is not part of this suggestion set")

        if suggestion_set.status is not SuggestionStatus.ACTIVE:
            raise ConflictError(
                f"Suggestion set is {suggestion_set.status.value}",
                reason=f"set_{suggestion_set.status.value}",
            )

        if slot.expires_at <= now:
            remaining = await self._remaining_slots(suggestion_set, now)
            raise ConflictError("Chosen slot has expired", remaining, reason="slot_expired")

        reservation = Reservation(
            id=str(uuid.uuid4()),
            organizer_id=organizer_id,
            contact_id=contact_id,
            batch_id=batch_id,
            suggestion_set_id=suggestion_set.id,
            start=slot.start,
            end=slot.end,
            timezone=contact.timezone,
            status=ReservationStatus.PENDING,
            expires_at=min(now + self.pending_ttl, slot.start),
            created_at=now,
        )

        try:
            committed = await self.repository.commit_reservation(reservation, suggestion_set.id)
        except ConflictError as e:
            remaining = await self._remaining_slots(suggestion_set, now, exclude=slot)
            logger.info(
                "Slot confirmation lost to a conflicting reservation",
                organizer_id=organizer_id,
                contact_id=contact_id,
                batch_id=batch_id,
                start=slot.start.isoformat(),
                reason=e.reason,
                remaining=len(remaining),
            )
            raise ConflictError(e.message, remaining, reason=e.reason) from e

        logger.info(
            "Reservation created",
            organizer_id=organizer_id,
            contact_id=contact_id,
            batch_id=batch_id,
            reservation_id=committed.id,
            start=committed.start.isoformat(),
        )
        return committed

    async def _remaining_slots(
        self, suggestion_set: SuggestionSet, now: datetime, exclude: SuggestedSlot | None = None
    ) -> list[SuggestedSlot]:
        candidates = [
            slot
            for slot in suggestion_set.slots
            if slot is not exclude and not slot.selected and slot.expires_at > now
        ]
        if not candidates:
            return []
        taken = await self.repository.list_committed_intervals(
            suggestion_set.organizer_id,
            min(slot.start for slot in candidates),
            max(slot.end for slot in candidates),
        )
        return [
            slot
            for slot in candidates
            if not any(slot.interval.overlaps(interval) for interval in taken)
        ]

    async def mark_reservation_confirmed(
        self, organizer_id: str, reservation_id: str
    ) -> Reservation:
        return await self._transition(
            organizer_id,
            reservation_id,
            (ReservationStatus.PENDING,),
            ReservationStatus.CONFIRMED,
        )

    async def cancel_reservation(self, organizer_id: str, reservation_id: str) -> Reservation:
        return await self._transition(
            organizer_id, reservation_id, LIVE_RESERVATION_STATUSES, ReservationStatus.CANCELLED
        )

    async def _transition(self, organizer_id, reservation_id, from_statuses, to_status):
        updated = await self.repository.transition_reservation(
            organizer_id, reservation_id, from_statuses, to_status
        )
        if updated is not None:
            logger.info(
                "Reservation status changed",
                organizer_id=organizer_id,
                reservation_id=reservation_id,
                status=to_status.value,
            )
            return updated

        existing = await self.repository.get_reservation(organizer_id, reservation_id)
        if existing is None:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        raise ConflictError(
            f"Reservation is {existing.status.value}", reason=f"reservation_{existing.status.value}"
        )

    # =======================================================================
    # CLEANUP
    # =======================================================================

    async def run_expiry_cleanup(
        self, organizer_id: str, now: datetime | None = None
    ) -> CleanupResult:
        """
        Expire stale records and enforce the organizer's retention window.

        Idempotent: a second run at the same instant changes nothing.
        """
        now = now or datetime.now(UTC)
        result = CleanupResult(organizer_id=organizer_id)
        repo = self.repository

        result.expired_pending_reservations = await repo.expire_pending_reservations(
            organizer_id, now
        )
        result.expired_confirmed_reservations = await repo.expire_finished_reservations(
            organizer_id, now
        )
        result.expired_suggestion_sets = await repo.expire_stale_suggestion_sets(organizer_id, now)
        result.deleted_suggestion_sets = await repo.delete_suggestion_sets_past_grace(
            organizer_id, now - self.suggestion_grace
        )

        organizer = await repo.get_organizer(organizer_id)
        retention_days = (
            organizer.data_retention_days
            if organizer is not None
            else settings.DEFAULT_DATA_RETENTION_DAYS
        )
        if retention_days == -1:
            result.retention_skipped = True
        else:
            result.deleted_reservations = await repo.delete_reservations_before(
                organizer_id, now - timedelta(days=retention_days)
            )

        log = logger.info if result.total_changes else logger.debug
        log(
            "Expiry cleanup finished",
            organizer_id=organizer_id,
            expired_pending=result.expired_pending_reservations,
            expired_confirmed=result.expired_confirmed_reservations,
            expired_sets=result.expired_suggestion_sets,
            deleted_sets=result.deleted_suggestion_sets,
            deleted_reservations=result.deleted_reservations,
            retention_skipped=result.retention_skipped,
        )
        return result


reservation_service = ReservationService()
