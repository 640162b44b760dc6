"""
Quality matrix builder.

Runs the normalizer and scorer for every contact in a batch and returns
contact_id -> viable ScoredSlots sorted best first. Contacts that end up with
nothing usable are reported separately instead of getting a partial row.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from coffeechat.features.batch_scheduling.domain.errors import NoViableSlotsError
from coffeechat.features.batch_scheduling.domain.models import (
    AvailabilityResult,
    BatchOptions,
    ContactProfile,
    MatrixBuildResult,
    OrganizerProfile,
    ScoredSlot,
    TimeInterval,
    UnsatisfiedContact,
)
from coffeechat.features.batch_scheduling.pipeline.availability import (
    AvailabilityRequest,
    normalize_availability,
)
from coffeechat.features.batch_scheduling.pipeline.availability.normalizer import (
    DEFAULT_CONTACT_HOURS,
)
from coffeechat.features.batch_scheduling.pipeline.scoring import FairnessState, QualityScorer
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REASON_NO_OVERLAP = "no_overlap"
REASON_NO_OPEN_SLOTS = "no_open_slots"
REASON_BELOW_FLOOR = "below_viability_floor"


@dataclass(slots=True)
class ContactScheduleInput:
    contact: ContactProfile
    # None when the contact's calendar could not be read
    busy: list[TimeInterval] | None


def sort_key(slot: ScoredSlot) -> tuple[float, datetime]:
    return -slot.score, slot.start


def _density(interval: TimeInterval, commitments: list[TimeInterval], window: timedelta) -> int:
    return sum(1 for busy in commitments if interval.overlaps(busy, window))


def score_viable_slots(
    availability: AvailabilityResult,
    contact: ContactProfile,
    *,
    organizer_busy: list[TimeInterval],
    viability_floor: float,
    density_window: timedelta,
    scorer: QualityScorer,
    fairness_state: FairnessState,
) -> list[ScoredSlot]:
    """
    Score a contact's candidates and keep those at or above the floor, best first.

    Raises:
        NoViableSlotsError: no candidate is left, with the reason
    """
    if availability.no_overlap:
        raise NoViableSlotsError(contact.id, REASON_NO_OVERLAP)
    if not availability.slots:
        raise NoViableSlotsError(contact.id, REASON_NO_OPEN_SLOTS)

    scored = [
        scorer.score(
            candidate,
            contact,
            fairness_state,
            density=_density(candidate.interval, organizer_busy, density_window),
        )
        for candidate in availability.slots
    ]
    viable = sorted((slot for slot in scored if slot.score >= viability_floor), key=sort_key)
    if not viable:
        logger.debug(
            "All candidate slots below viability floor",
            contact_id=contact.id,
            candidates=len(scored),
            viability_floor=viability_floor,
        )
        raise NoViableSlotsError(contact.id, REASON_BELOW_FLOOR)
    return viable


def build_quality_matrix(
    inputs: list[ContactScheduleInput],
    *,
    organizer: OrganizerProfile,
    organizer_busy: list[TimeInterval],
    date_range: TimeInterval,
    duration: timedelta,
    slots_per_contact: int,
    options: BatchOptions,
    scorer: QualityScorer,
    fairness_state: FairnessState,
    not_before: datetime,
) -> MatrixBuildResult:
    """
    Build the per-contact quality matrix.

    Contacts are scored in input order and the fairness state is updated with
    each contact's top picks before the next one is scored.
    No candidate starts before `not_before`.
    """
    result = MatrixBuildResult(matrix={})
    include_weekends = (
        options.include_weekends
        if options.include_weekends is not None
        else organizer.weekend_availability
    )
    density_window = timedelta(hours=options.weights.density_window_hours)

    for item in inputs:
        contact = item.contact
        request = AvailabilityRequest(
            contact_id=contact.id,
            contact_timezone=contact.timezone,
            organizer_timezone=organizer.timezone,
            organizer_hours=organizer.working_hours,
            date_range=date_range,
            duration=duration,
            organizer_busy=organizer_busy,
            contact_busy=item.busy,
            contact_hours=contact.working_hours,
            buffer=options.buffer,
            slot_step=timedelta(minutes=options.slot_step_minutes),
            include_weekends=include_weekends,
            not_before=not_before,
        )
        availability = normalize_availability(request)
        relaxations: list[str] = []

        if not availability.availability_known:
            result.unknown_availability.append(contact.id)

        if availability.no_overlap and options.relaxed_window_hours > 0:
            base_hours = contact.working_hours or DEFAULT_CONTACT_HOURS
            request = replace(
                request, contact_hours=base_hours.widened(options.relaxed_window_hours)
            )
            availability = normalize_availability(request)
            relaxations.append("widened_contact_hours")

        if (
            not availability.no_overlap
            and not availability.slots
            and options.fallback_extension_days > 0
        ):
            extended = TimeInterval(
                date_range.start,
                date_range.end + timedelta(days=options.fallback_extension_days),
            )
            request = replace(request, date_range=extended)
            availability = normalize_availability(request)
            relaxations.append("extended_date_range")

        if relaxations:
            result.relaxations[contact.id] = relaxations

        try:
            viable = score_viable_slots(
                availability,
                contact,
                organizer_busy=organizer_busy,
                viability_floor=options.viability_floor,
                density_window=density_window,
                scorer=scorer,
                fairness_state=fairness_state,
            )
        except NoViableSlotsError as e:
            result.unsatisfied.append(UnsatisfiedContact(e.contact_id, e.reason))
            logger.info(
                "Contact has no viable slots",
                contact_id=e.contact_id,
                reason=e.reason,
                relaxations=relaxations,
            )
            continue

        result.matrix[contact.id] = viable
        fairness_state.record(viable[:slots_per_contact])

    logger.debug(
        "Quality matrix built",
        contacts=len(inputs),
        rows=len(result.matrix),
        unsatisfied=len(result.unsatisfied),
    )
    return result
