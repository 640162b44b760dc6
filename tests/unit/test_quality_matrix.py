from datetime import timedelta

import pytest

from coffeechat.features.batch_scheduling.domain.errors import NoViableSlotsError
from coffeechat.features.batch_scheduling.domain.models import (
    AvailabilityResult,
    BatchOptions,
    CandidateSlot,
    ContactProfile,
    OrganizerProfile,
    TimeInterval,
)
from coffeechat.features.batch_scheduling.pipeline.matrix import (
    ContactScheduleInput,
    build_quality_matrix,
    score_viable_slots,
)
from coffeechat.features.batch_scheduling.pipeline.matrix.builder import (
    REASON_BELOW_FLOOR,
    REASON_NO_OPEN_SLOTS,
    REASON_NO_OVERLAP,
)
from coffeechat.features.batch_scheduling.pipeline.scoring import FairnessState, QualityScorer


@pytest.fixture
def organizer():
    return OrganizerProfile(id="org-1", email="host@example.com", timezone="UTC")


def _contact(contact_id: str, timezone: str = "UTC") -> ContactProfile:
    return ContactProfile(id=contact_id, organizer_id="org-1", name=contact_id, timezone=timezone)


def _build(at, organizer, inputs, options=None, organizer_busy=None, state=None):
    return build_quality_matrix(
        inputs,
        organizer=organizer,
        organizer_busy=organizer_busy or [],
        date_range=TimeInterval(at(1), at(2)),
        duration=timedelta(minutes=60),
        slots_per_contact=3,
        options=options or BatchOptions(),
        scorer=QualityScorer(),
        fairness_state=state or FairnessState(),
        not_before=at(0),
    )


def test_rows_are_sorted_and_above_floor(at, organizer):
    state = FairnessState()
    result = _build(
        at,
        organizer,
        [ContactScheduleInput(_contact("alice"), []), ContactScheduleInput(_contact("bob"), [])],
        state=state,
    )

    assert set(result.matrix) == {"alice", "bob"}
    for row in result.matrix.values():
        scores = [slot.score for slot in row]
        assert scores == sorted(scores, reverse=True)
        assert min(scores) >= BatchOptions().viability_floor
    assert state.contacts_recorded == 2
    assert result.unsatisfied == []


def test_fairness_state_steers_second_contact(at, organizer):
    result = _build(
        at,
        organizer,
        [ContactScheduleInput(_contact("alice"), []), ContactScheduleInput(_contact("bob"), [])],
    )

    alice_top = result.matrix["alice"][0]
    bob_same = next(slot for slot in result.matrix["bob"] if slot.start == alice_top.start)
    assert bob_same.factors_dict()["fairness"] <= 0
    assert bob_same.score <= alice_top.score


def test_no_overlap_contact_is_unsatisfied_after_widening(at, organizer):
    result = _build(at, organizer, [ContactScheduleInput(_contact("far", "Etc/GMT-12"), [])])

    assert result.matrix == {}
    assert [(u.contact_id, u.reason) for u in result.unsatisfied] == [("far", REASON_NO_OVERLAP)]
    assert result.relaxations["far"] == ["widened_contact_hours"]


def test_widening_rescues_near_miss(at, organizer):
    # UTC+9: 09:00-17:00 local is 00:00-08:00 UTC, widened by 2h reaches 10:00 UTC.
    # That hour is evening for the contact, so keep the floor out of the way.
    result = _build(
        at,
        organizer,
        [ContactScheduleInput(_contact("tokyo", "Etc/GMT-9"), [])],
        options=BatchOptions(viability_floor=0.0),
    )

    assert "tokyo" in result.matrix
    assert result.relaxations["tokyo"] == ["widened_contact_hours"]
    assert all(slot.end <= at(1, 10) for slot in result.matrix["tokyo"])


def test_fully_booked_range_is_extended(at, organizer):
    busy = [TimeInterval(at(1), at(2))]
    result = _build(
        at, organizer, [ContactScheduleInput(_contact("alice"), [])], organizer_busy=busy
    )

    assert result.relaxations["alice"] == ["extended_date_range"]
    assert result.matrix["alice"]
    assert all(slot.start >= at(2) for slot in result.matrix["alice"])


def test_everything_below_floor(at, organizer):
    options = BatchOptions(viability_floor=100.0)
    result = _build(at, organizer, [ContactScheduleInput(_contact("alice"), [])], options=options)

    assert result.matrix == {}
    assert result.unsatisfied[0].reason == REASON_BELOW_FLOOR


def test_unknown_availability_is_reported(at, organizer):
    result = _build(at, organizer, [ContactScheduleInput(_contact("alice"), None)])

    assert result.unknown_availability == ["alice"]
    assert result.matrix["alice"]


def _score(availability, viability_floor=0.0):
    return score_viable_slots(
        availability,
        _contact("alice"),
        organizer_busy=[],
        viability_floor=viability_floor,
        density_window=timedelta(hours=2),
        scorer=QualityScorer(),
        fairness_state=FairnessState(),
    )


@pytest.mark.parametrize(
    ("status", "reason"),
    [("no_overlap", REASON_NO_OVERLAP), ("ok", REASON_NO_OPEN_SLOTS)],
)
def test_score_viable_slots_raises_with_reason(status, reason):
    with pytest.raises(NoViableSlotsError) as exc_info:
        _score(AvailabilityResult(status=status, slots=[]))

    assert exc_info.value.contact_id == "alice"
    assert exc_info.value.reason == reason


def test_score_viable_slots_below_floor(at):
    candidate = CandidateSlot("alice", at(1, 10), at(1, 11), "UTC")

    with pytest.raises(NoViableSlotsError) as exc_info:
        _score(AvailabilityResult(status="ok", slots=[candidate]), viability_floor=101.0)

    assert exc_info.value.reason == REASON_BELOW_FLOOR
    assert exc_info.value.error_code == "no_viable_slots"


def test_score_viable_slots_orders_best_first(at):
    candidates = [CandidateSlot("alice", at(1, hour), at(1, hour + 1), "UTC") for hour in (8, 11)]

    viable = _score(AvailabilityResult(status="ok", slots=candidates))

    assert [slot.score for slot in viable] == sorted((s.score for s in viable), reverse=True)
    assert {slot.start for slot in viable} == {at(1, 8), at(1, 11)}
