"""
Batch orchestration - GenerateBatchSuggestions end to end.

fetch busy data -> quality matrix -> greedy allocation -> fairness local
search -> persist suggestion sets. Each call builds its own fairness state,
allocator and reservation map; the only shared state is the registry of
cancellation tokens for batches currently running.
"""

from __future__ import annotations

import asyncio
import statistics
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from coffeechat.config import settings
from coffeechat.features.batch_scheduling.domain.errors import (
    CalendarProviderError,
    SchedulingInputError,
)
from coffeechat.features.batch_scheduling.domain.models import (
    BatchOptions,
    ContactProfile,
    OrganizerProfile,
    SuggestedSlot,
    TimeInterval,
    UnsatisfiedContact,
)
from coffeechat.features.batch_scheduling.pipeline.allocation import (
    CancellationToken,
    FairnessLocalSearch,
    GreedyAllocator,
    population_std,
)
from coffeechat.features.batch_scheduling.pipeline.matrix import (
    ContactScheduleInput,
    build_quality_matrix,
)
from coffeechat.features.batch_scheduling.pipeline.scoring import FairnessState, QualityScorer
from coffeechat.features.batch_scheduling.repository import SchedulingRepository
from coffeechat.infrastructure.observability.logging import (
    bind_batch_context,
    clear_batch_context,
    get_logger,
)

from .calendar_provider import CalendarProvider
from .reservation_service import ReservationService

logger = get_logger(__name__)

REASON_CONTACT_NOT_FOUND = "contact_not_found"
REASON_ALLOCATION_EXHAUSTED = "allocation_exhausted"
DENSITY_WARNING_THRESHOLD = 4


@dataclass(slots=True)
class ContactSuggestions:
    contact_id: str
    suggested_slots: list[SuggestedSlot]


@dataclass(slots=True)
class BatchResult:
    batch_id: str
    per_contact: list[ContactSuggestions]
    unsatisfied_contacts: list[UnsatisfiedContact]
    statistics: dict = field(default_factory=dict)


class BatchSchedulingService:
    def __init__(
        self,
        provider: CalendarProvider,
        repository=SchedulingRepository,
        reservations: ReservationService | None = None,
        provider_timeout: float | None = None,
    ):
        self.provider = provider
        self.repository = repository
        self.reservations = reservations or ReservationService(repository=repository)
        self.provider_timeout = provider_timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._running: dict[str, CancellationToken] = {}

    # =======================================================================
    # PUBLIC API
    # =======================================================================

    async def generate_batch_suggestions(
        self,
        organizer_id: str,
        contact_ids: list[str],
        duration_minutes: int,
        slots_per_contact: int,
        date_range: TimeInterval | None = None,
        options: BatchOptions | None = None,
        now: datetime | None = None,
        batch_id: str | None = None,
    ) -> BatchResult:
        """
        Suggest up to `slots_per_contact` non-conflicting slots for each contact.

        Raises:
            SchedulingInputError: request failed validation
            CalendarProviderError: the organizer's own calendar could not be read
            BatchCancelledError: cancel_batch() was called while allocating
        """
        started = time.perf_counter()
        now = now or datetime.now(UTC)
        options = options or BatchOptions.from_defaults(settings.get_scheduling_defaults())
        contact_ids = self._validate_request(
            contact_ids, duration_minutes, slots_per_contact, date_range, now
        )
        date_range = date_range or TimeInterval(
            now, now + timedelta(days=settings.DEFAULT_DATE_RANGE_DAYS)
        )
        batch_id = batch_id or str(uuid.uuid4())
        token = CancellationToken(batch_id)
        self._running[batch_id] = token
        bind_batch_context(batch_id=batch_id, organizer_id=organizer_id)

        try:
            organizer = await self.repository.get_organizer(organizer_id)
            if organizer is None:
                raise SchedulingInputError(f"Unknown organizer {organizer_id}")
            options = options.for_organizer(organizer)

            contacts = await self.repository.get_contacts(organizer_id, contact_ids)
            by_id = {contact.id: contact for contact in contacts}
            ordered = [by_id[cid] for cid in contact_ids if cid in by_id]
            unsatisfied = [
                UnsatisfiedContact(cid, REASON_CONTACT_NOT_FOUND)
                for cid in contact_ids
                if cid not in by_id
            ]

            logger.info(
                "Generating batch suggestions",
                contacts=len(ordered),
                duration_minutes=duration_minutes,
                slots_per_contact=slots_per_contact,
                range_start=date_range.start.isoformat(),
                range_end=date_range.end.isoformat(),
            )

            fetch_range = TimeInterval(
                date_range.start,
                date_range.end + timedelta(days=options.fallback_extension_days),
            )
            organizer_busy = await self._organizer_busy(organizer, fetch_range, now)
            contact_busy = await self._contact_busy(ordered, fetch_range)

            token.raise_if_cancelled()
            scorer = QualityScorer(options.weights, consultant_mode=options.consultant_mode)
            fairness_state = FairnessState(
                step=options.weights.fairness_step,
                max_adjustment=options.weights.fairness_max,
            )
            build = await asyncio.to_thread(
                build_quality_matrix,
                [ContactScheduleInput(contact, contact_busy[contact.id]) for contact in ordered],
                organizer=organizer,
                organizer_busy=organizer_busy,
                date_range=date_range,
                duration=timedelta(minutes=duration_minutes),
                slots_per_contact=slots_per_contact,
                options=options,
                scorer=scorer,
                fairness_state=fairness_state,
                # earliest start whose suggestion is not already expired
                not_before=now + self.reservations.suggestion_expiry,
            )
            unsatisfied.extend(build.unsatisfied)

            token.raise_if_cancelled()
            allocator = GreedyAllocator(options)
            allocation = await asyncio.to_thread(
                allocator.allocate, build.matrix, slots_per_contact, token
            )
            search = FairnessLocalSearch(options.buffer, options.iteration_budget_per_contact)
            improved = await asyncio.to_thread(search.improve, allocation, build.matrix)

            for contact_id, slots in improved.allocation.assignments.items():
                if not slots:
                    unsatisfied.append(UnsatisfiedContact(contact_id, REASON_ALLOCATION_EXHAUSTED))

            token.raise_if_cancelled()
            suggestion_sets = await self.reservations.persist_suggestions(
                organizer_id, batch_id, improved.allocation, now
            )

            per_contact = [
                ContactSuggestions(suggestion_set.contact_id, suggestion_set.slots)
                for suggestion_set in suggestion_sets
            ]
            stats = self._statistics(
                organizer, per_contact, improved, build, len(contact_ids), started
            )
            logger.info(
                "Batch suggestions generated",
                satisfied=len(per_contact),
                unsatisfied=len(unsatisfied),
                total_slots=stats["total_slots"],
                std_before=stats["std_before_local_search"],
                std_after=stats["std_after_local_search"],
            )
            return BatchResult(
                batch_id=batch_id,
                per_contact=per_contact,
                unsatisfied_contacts=unsatisfied,
                statistics=stats,
            )
        finally:
            self._running.pop(batch_id, None)
            clear_batch_context()

    def cancel_batch(self, batch_id: str) -> bool:
        """Signal a running batch to stop. Returns False if it is not running."""
        token = self._running.get(batch_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Batch cancellation requested", batch_id=batch_id)
        return True

    def is_running(self, batch_id: str) -> bool:
        return batch_id in self._running

    # =======================================================================
    # PRIVATE METHODS
    # =======================================================================

    def _validate_request(
        self,
        contact_ids: list[str],
        duration_minutes: int,
        slots_per_contact: int,
        date_range: TimeInterval | None,
        now: datetime,
    ) -> list[str]:
        unique_ids = list(dict.fromkeys(cid for cid in contact_ids if cid))
        if not unique_ids:
            raise SchedulingInputError("At least one contact is required")
        if len(unique_ids) > settings.MAX_CONTACTS_PER_BATCH:
            raise SchedulingInputError(
                f"At most {settings.MAX_CONTACTS_PER_BATCH} contacts per batch"
            )
        if not settings.MIN_DURATION_MINUTES <= duration_minutes <= settings.MAX_DURATION_MINUTES:
            raise SchedulingInputError(
                f"Duration must be between {settings.MIN_DURATION_MINUTES} and "
                f"{settings.MAX_DURATION_MINUTES} minutes"
            )
        if not 1 <= slots_per_contact <= settings.MAX_SLOTS_PER_CONTACT:
            raise SchedulingInputError(
                f"slots_per_contact must be between 1 and {settings.MAX_SLOTS_PER_CONTACT}"
            )
        if date_range is not None:
            if date_range.duration > timedelta(days=settings.MAX_DATE_RANGE_DAYS):
                raise SchedulingInputError(
                    f"Date range cannot exceed {settings.MAX_DATE_RANGE_DAYS} days"
                )
            if date_range.start < now - timedelta(days=1):
                raise SchedulingInputError("Date range cannot start in the past")
            if date_range.end <= now:
                raise SchedulingInputError("Date range has already ended")
        return unique_ids

    async def _organizer_busy(
        self, organizer: OrganizerProfile, fetch_range: TimeInterval, now: datetime
    ) -> list[TimeInterval]:
        busy: list[TimeInterval] = []
        if organizer.calendar_account_ref:
            try:
                busy = await asyncio.wait_for(
                    self.provider.get_busy_intervals(
                        organizer.calendar_account_ref, fetch_range.start, fetch_range.end
                    ),
                    timeout=self.provider_timeout,
                )
            except TimeoutError as e:
                raise CalendarProviderError(
                    "Timed out reading organizer calendar", transient=True
                ) from e

        committed = await self.repository.list_committed_intervals(
            organizer.id, fetch_range.start, fetch_range.end
        )
        suggested = await self.repository.list_active_suggestion_intervals(
            organizer.id, fetch_range.start, fetch_range.end, now
        )
        return sorted(busy + committed + suggested, key=lambda interval: interval.start)

    async def _contact_busy(
        self, contacts: list[ContactProfile], fetch_range: TimeInterval
    ) -> dict[str, list[TimeInterval] | None]:
        async def fetch(contact: ContactProfile) -> list[TimeInterval] | None:
            if not contact.calendar_account_ref:
                return None
            try:
                return await asyncio.wait_for(
                    self.provider.get_busy_intervals(
                        contact.calendar_account_ref, fetch_range.start, fetch_range.end
                    ),
                    timeout=self.provider_timeout,
                )
            except TimeoutError:
                logger.warning("Contact calendar fetch timed out", contact_id=contact.id)
                return None
            except CalendarProviderError as e:
                logger.warning(
                    "Contact calendar unavailable, treating as open",
                    contact_id=contact.id,
                    transient=e.transient,
                    error=str(e),
                )
                return None

        results = await asyncio.gather(*(fetch(contact) for contact in contacts))
        return {contact.id: busy for contact, busy in zip(contacts, results, strict=True)}

    def _statistics(self, organizer, per_contact, search_result, build, requested, started):
        scores = [slot.score for entry in per_contact for slot in entry.suggested_slots]
        averages = [
            statistics.fmean(slot.score for slot in entry.suggested_slots) for entry in per_contact
        ]
        average_std = population_std(averages)

        org_tz = ZoneInfo(organizer.timezone)
        per_day = Counter(
            slot.start.astimezone(org_tz).date()
            for entry in per_contact
            for slot in entry.suggested_slots
        )
        dense_days = sorted(
            day.isoformat()
            for day, count in per_day.items()
            if count > DENSITY_WARNING_THRESHOLD
        )

        return {
            "total_contacts": requested,
            "satisfied_contacts": len(per_contact),
            "total_slots": len(scores),
            "average_score": round(statistics.fmean(scores), 2) if scores else 0.0,
            "score_std": round(population_std(scores), 2),
            "fairness_score": round(max(0.0, 100.0 - average_std), 2),
            "std_before_local_search": round(search_result.std_before, 4),
            "std_after_local_search": round(search_result.std_after, 4),
            "local_search_swaps": search_result.swaps,
            "local_search_iterations": search_result.iterations,
            "unknown_availability": list(build.unknown_availability),
            "relaxations": dict(build.relaxations),
            "density_warning_days": dense_days,
            "processing_time_ms": round((time.perf_counter() - started) * 1000, 2),
        }
