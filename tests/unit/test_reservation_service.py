import asyncio
from datetime import timedelta

import pytest

from coffeechat.features.batch_scheduling.domain.errors import (
    ConflictError,
    ConsistencyError,
    ReservationNotFoundError,
    SchedulingInputError,
    SuggestionNotFoundError,
)
from coffeechat.features.batch_scheduling.domain.models import (
    Allocation,
    ReservationStatus,
    SuggestionStatus,
    TimeInterval,
)


@pytest.fixture
def suggest(reservations, organizer, at):
    """Persist one suggestion set per contact for `batch_id`."""

    async def _suggest(batch_id, assignments, now=None):
        allocation = Allocation(assignments=assignments)
        return await reservations.persist_suggestions(
            organizer.id, batch_id, allocation, now or at(0)
        )

    return _suggest


@pytest.mark.asyncio
async def test_suggested_slot_expires_one_day_before_start(suggest, scored_slot, at):
    sets = await suggest("batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)]})

    slot = sets[0].slots[0]
    assert slot.expires_at == at(3, 10) - timedelta(hours=24)
    assert slot.selected is False
    assert sets[0].status is SuggestionStatus.ACTIVE


@pytest.mark.asyncio
async def test_contacts_without_slots_get_no_set(suggest, scored_slot):
    sets = await suggest(
        "batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)], "bob": []}
    )

    assert [s.contact_id for s in sets] == ["alice"]


@pytest.mark.asyncio
async def test_confirm_slot_creates_pending_reservation(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice", timezone="Europe/Berlin")
    await suggest("batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)]})

    reservation = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(3, 10), at(3, 11)), now=at(0)
    )

    assert reservation.status is ReservationStatus.PENDING
    assert reservation.timezone == "Europe/Berlin"
    assert reservation.expires_at == at(3, 10)
    suggestion_set = await repository.get_suggestion_set(organizer.id, "batch-1", "alice")
    assert suggestion_set.status is SuggestionStatus.MEETING_SCHEDULED
    assert suggestion_set.slots[0].selected is True


@pytest.mark.asyncio
async def test_pending_ttl_caps_expiry_for_far_slots(
    reservations, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 20, 10, 80.0)]})

    reservation = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(20, 10), at(20, 11)), now=at(0)
    )

    assert reservation.expires_at == at(7)


@pytest.mark.asyncio
async def test_simultaneous_confirmations_yield_one_reservation(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    make_contact("bob")
    await suggest("batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)]})
    await suggest(
        "batch-2",
        {"bob": [scored_slot("bob", 3, 10, 85.0), scored_slot("bob", 4, 10, 70.0)]},
    )
    chosen = TimeInterval(at(3, 10), at(3, 11))

    results = await asyncio.gather(
        reservations.confirm_slot(organizer.id, "alice", "batch-1", chosen, now=at(0)),
        reservations.confirm_slot(organizer.id, "bob", "batch-2", chosen, now=at(0)),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert repository.commit_calls == 2
    assert len(repository.reservations) == 1
    if created[0].contact_id == "alice":
        assert [s.start for s in conflicts[0].remaining_slots] == [at(4, 10)]


@pytest.mark.asyncio
async def test_confirm_unknown_slot_is_input_error(
    reservations, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)]})

    with pytest.raises(SchedulingInputError):
        await reservations.confirm_slot(
            organizer.id, "alice", "batch-1", TimeInterval(at(3, 14), at(3, 15)), now=at(0)
        )


@pytest.mark.asyncio
async def test_confirm_without_suggestions_is_not_found(reservations, organizer, at):
    with pytest.raises(SuggestionNotFoundError):
        await reservations.confirm_slot(
            organizer.id, "alice", "missing", TimeInterval(at(3, 10), at(3, 11)), now=at(0)
        )


@pytest.mark.asyncio
async def test_expired_slot_conflicts_with_remaining_slots(
    reservations, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest(
        "batch-1",
        {"alice": [scored_slot("alice", 1, 10, 80.0), scored_slot("alice", 4, 10, 70.0)]},
    )

    with pytest.raises(ConflictError) as exc:
        await reservations.confirm_slot(
            organizer.id, "alice", "batch-1", TimeInterval(at(1, 10), at(1, 11)), now=at(0, 12)
        )

    assert exc.value.reason == "slot_expired"
    assert [s.start for s in exc.value.remaining_slots] == [at(4, 10)]


@pytest.mark.asyncio
async def test_second_confirmation_from_same_set_conflicts(
    reservations, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest(
        "batch-1",
        {"alice": [scored_slot("alice", 3, 10, 80.0), scored_slot("alice", 4, 10, 70.0)]},
    )
    await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(3, 10), at(3, 11)), now=at(0)
    )

    with pytest.raises(ConflictError) as exc:
        await reservations.confirm_slot(
            organizer.id, "alice", "batch-1", TimeInterval(at(4, 10), at(4, 11)), now=at(0)
        )

    assert exc.value.reason == "set_meeting_scheduled"


@pytest.mark.asyncio
async def test_deleted_contact_quarantines_set(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)]})
    repository.remove_contact(organizer.id, "alice")

    with pytest.raises(ConsistencyError):
        await reservations.confirm_slot(
            organizer.id, "alice", "batch-1", TimeInterval(at(3, 10), at(3, 11)), now=at(0)
        )

    suggestion_set = await repository.get_suggestion_set(organizer.id, "batch-1", "alice")
    assert suggestion_set.status is SuggestionStatus.CLEARED
    assert repository.reservations == {}


@pytest.mark.asyncio
async def test_clear_suggestions_is_idempotent(
    reservations, organizer, suggest, scored_slot
):
    await suggest(
        "batch-1",
        {"alice": [scored_slot("alice", 3, 10, 80.0)], "bob": [scored_slot("bob", 3, 14, 80.0)]},
    )

    assert await reservations.clear_suggestions(organizer.id, "batch-1") == 2
    assert await reservations.clear_suggestions(organizer.id, "batch-1") == 0


@pytest.mark.asyncio
async def test_list_batch_of_unknown_batch_is_not_found(reservations, organizer):
    with pytest.raises(SuggestionNotFoundError):
        await reservations.list_batch(organizer.id, "nope")


# =========================================================================
# Reservation transitions
# =========================================================================


@pytest.mark.asyncio
async def test_reservation_confirm_then_cancel(
    reservations, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 3, 10, 80.0)]})
    pending = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(3, 10), at(3, 11)), now=at(0)
    )

    confirmed = await reservations.mark_reservation_confirmed(organizer.id, pending.id)
    cancelled = await reservations.cancel_reservation(organizer.id, pending.id)

    assert confirmed.status is ReservationStatus.CONFIRMED
    assert cancelled.status is ReservationStatus.CANCELLED
    with pytest.raises(ConflictError) as exc:
        await reservations.cancel_reservation(organizer.id, pending.id)
    assert exc.value.reason == "reservation_cancelled"


@pytest.mark.asyncio
async def test_transition_of_unknown_reservation(reservations, organizer):
    with pytest.raises(ReservationNotFoundError):
        await reservations.mark_reservation_confirmed(organizer.id, "missing")


# =========================================================================
# Expiry cleanup
# =========================================================================


@pytest.mark.asyncio
async def test_cleanup_after_expiry_expires_set_and_keeps_reservation(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 4, 10, 80.0)]})
    reservation = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(4, 10), at(4, 11)), now=at(0)
    )
    sets = await suggest("batch-2", {"bob": [scored_slot("bob", 2, 10, 75.0)]})
    expires_at = sets[0].slots[0].expires_at

    result = await reservations.run_expiry_cleanup(
        organizer.id, now=expires_at + timedelta(seconds=1)
    )

    assert result.expired_suggestion_sets == 1
    assert result.expired_pending_reservations == 0
    bob_set = await repository.get_suggestion_set(organizer.id, "batch-2", "bob")
    assert bob_set.status is SuggestionStatus.EXPIRED
    kept = await repository.get_reservation(organizer.id, reservation.id)
    assert kept.status is ReservationStatus.PENDING


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(reservations, organizer, suggest, scored_slot, at):
    await suggest("batch-1", {"alice": [scored_slot("alice", 2, 10, 75.0)]})

    first = await reservations.run_expiry_cleanup(organizer.id, now=at(3))
    second = await reservations.run_expiry_cleanup(organizer.id, now=at(3))

    assert first.total_changes == 1
    assert second.total_changes == 0


@pytest.mark.asyncio
async def test_cleanup_expires_pending_and_finished_reservations(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    make_contact("bob")
    await suggest("batch-1", {"alice": [scored_slot("alice", 1, 10, 80.0)]})
    await suggest("batch-2", {"bob": [scored_slot("bob", 1, 14, 80.0)]})
    pending = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(1, 10), at(1, 11)), now=at(0)
    )
    other = await reservations.confirm_slot(
        organizer.id, "bob", "batch-2", TimeInterval(at(1, 14), at(1, 15)), now=at(0)
    )
    await reservations.mark_reservation_confirmed(organizer.id, other.id)

    result = await reservations.run_expiry_cleanup(organizer.id, now=at(2))

    assert result.expired_pending_reservations == 1
    assert result.expired_confirmed_reservations == 1
    assert repository.reservations[pending.id].status is ReservationStatus.EXPIRED
    assert repository.reservations[other.id].status is ReservationStatus.EXPIRED


@pytest.mark.asyncio
async def test_cleanup_grace_and_retention(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 1, 10, 80.0)]})
    reservation = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(1, 10), at(1, 11)), now=at(0)
    )
    await reservations.cancel_reservation(organizer.id, reservation.id)
    await suggest("batch-2", {"bob": [scored_slot("bob", 2, 10, 80.0)]})
    await reservations.clear_suggestions(organizer.id, "batch-2")

    organizer.data_retention_days = 30
    result = await reservations.run_expiry_cleanup(organizer.id, now=at(40))

    assert result.deleted_suggestion_sets == 1
    assert result.deleted_reservations == 1
    assert repository.reservations == {}


@pytest.mark.asyncio
async def test_retention_minus_one_keeps_reservations(
    reservations, repository, organizer, make_contact, suggest, scored_slot, at
):
    make_contact("alice")
    await suggest("batch-1", {"alice": [scored_slot("alice", 1, 10, 80.0)]})
    reservation = await reservations.confirm_slot(
        organizer.id, "alice", "batch-1", TimeInterval(at(1, 10), at(1, 11)), now=at(0)
    )
    await reservations.cancel_reservation(organizer.id, reservation.id)

    organizer.data_retention_days = -1
    result = await reservations.run_expiry_cleanup(organizer.id, now=at(400))

    assert result.retention_skipped is True
    assert result.deleted_reservations == 0
    assert reservation.id in repository.reservations
