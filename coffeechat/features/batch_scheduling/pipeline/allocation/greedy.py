"""
Constrained greedy allocation with lookahead.

Contacts are served scarcest first. For each one we build a small pool of
mutually compatible candidates, charge every candidate for the damage it
would do to the contacts still waiting, and keep the best-scoring subset.
Chosen intervals are reserved for the rest of the run so no two contacts
ever share organizer time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import timedelta
from itertools import combinations, pairwise
from zoneinfo import ZoneInfo

from coffeechat.features.batch_scheduling.domain.errors import BatchCancelledError
from coffeechat.features.batch_scheduling.domain.models import (
    Allocation,
    BatchOptions,
    QualityMatrix,
    ScoredSlot,
    TimeInterval,
)
from coffeechat.features.batch_scheduling.pipeline.matrix import sort_key
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, checked between contacts by the allocator."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise BatchCancelledError(self.batch_id)


@dataclass(slots=True, frozen=True)
class RelaxationLevel:
    name: str
    weight_factor: float
    protect_only_option: bool


RELAXATION_LADDER = (
    RelaxationLevel("strict", 1.0, True),
    RelaxationLevel("half", 0.5, False),
    RelaxationLevel("off", 0.0, False),
)


def conflicts(interval: TimeInterval, taken: list[TimeInterval], buffer: timedelta) -> bool:
    return any(interval.overlaps(other, buffer) for other in taken)


class GreedyAllocator:
    def __init__(self, options: BatchOptions):
        self.options = options
        self.buffer = options.buffer

    def allocate(
        self,
        matrix: QualityMatrix,
        slots_per_contact: int,
        cancellation: CancellationToken | None = None,
    ) -> Allocation:
        order = sorted(matrix, key=lambda contact_id: (len(matrix[contact_id]), contact_id))
        reserved: list[TimeInterval] = []
        allocation = Allocation(assignments={})

        for index, contact_id in enumerate(order):
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            waiting = order[index + 1 : index + 1 + self.options.lookahead_limit]
            chosen, level = self._allocate_contact(
                contact_id, matrix, waiting, reserved, slots_per_contact
            )
            reserved.extend(slot.interval for slot in chosen)
            allocation.assignments[contact_id] = chosen
            allocation.relaxation_levels[contact_id] = level
            if len(chosen) < slots_per_contact:
                allocation.shortfalls[contact_id] = slots_per_contact - len(chosen)

        logger.debug(
            "Greedy allocation complete",
            contacts=len(order),
            slots_assigned=sum(len(slots) for slots in allocation.assignments.values()),
            shortfalls=len(allocation.shortfalls),
        )
        return allocation

    # =======================================================================
    # PRIVATE METHODS
    # =======================================================================

    def _allocate_contact(
        self,
        contact_id: str,
        matrix: QualityMatrix,
        waiting: list[str],
        reserved: list[TimeInterval],
        slots_per_contact: int,
    ) -> tuple[list[ScoredSlot], str]:
        available = [
            slot
            for slot in matrix[contact_id]
            if not conflicts(slot.interval, reserved, self.buffer)
        ]
        if not available:
            return [], "exhausted"

        waiting_options = {
            other: [
                slot
                for slot in matrix[other]
                if not conflicts(slot.interval, reserved, self.buffer)
            ]
            for other in waiting
        }
        costs = {slot: self._lookahead_cost(slot, waiting_options) for slot in available}
        starving = {slot for slot in available if self._starves(slot, waiting_options)}

        for target in range(slots_per_contact, 0, -1):
            for level in RELAXATION_LADDER:
                eligible = [
                    slot
                    for slot in available
                    if not (level.protect_only_option and slot in starving)
                ]
                pool = self._compatible_pool(eligible, target + self.options.overcommit_margin)
                if len(pool) < target:
                    continue
                weight = self.options.lookahead_weight * level.weight_factor
                chosen = self._best_subset(pool, target, costs, weight)
                return sorted(chosen, key=sort_key), level.name

        return [], "exhausted"

    def _compatible_pool(self, candidates: list[ScoredSlot], size: int) -> list[ScoredSlot]:
        pool: list[ScoredSlot] = []
        for slot in candidates:
            if conflicts(slot.interval, [member.interval for member in pool], self.buffer):
                continue
            pool.append(slot)
            if len(pool) >= size:
                break
        return pool

    def _best_option(self, options: list[ScoredSlot], blocked: TimeInterval | None) -> float:
        for slot in options:
            if blocked is None or not slot.interval.overlaps(blocked, self.buffer):
                return slot.score
        return 0.0

    def _lookahead_cost(
        self, candidate: ScoredSlot, waiting_options: dict[str, list[ScoredSlot]]
    ) -> float:
        """Total drop in best achievable score of waiting contacts if candidate is taken."""
        cost = 0.0
        for options in waiting_options.values():
            if not options:
                continue
            before = options[0].score
            after = self._best_option(options, candidate.interval)
            cost += before - after
        return cost

    def _starves(self, candidate: ScoredSlot, waiting_options: dict[str, list[ScoredSlot]]) -> bool:
        for options in waiting_options.values():
            if options and all(
                slot.interval.overlaps(candidate.interval, self.buffer) for slot in options
            ):
                return True
        return False

    def _same_day_pairs(self, subset: tuple[ScoredSlot, ...]) -> int:
        days = sorted(
            slot.start.astimezone(ZoneInfo(slot.contact_timezone)).date() for slot in subset
        )
        return sum(1 for first, second in pairwise(days) if first == second)

    def _best_subset(
        self,
        pool: list[ScoredSlot],
        target: int,
        costs: dict[ScoredSlot, float],
        weight: float,
    ) -> list[ScoredSlot]:
        best: tuple[ScoredSlot, ...] = ()
        best_value = float("-inf")
        # Pool is ordered best first, so on ties the earliest-found subset wins.
        for subset in combinations(pool, target):
            value = (
                sum(slot.score for slot in subset)
                - weight * sum(costs[slot] for slot in subset)
                - self.options.same_day_penalty * self._same_day_pairs(subset)
            )
            if value > best_value + 1e-9:
                best, best_value = subset, value
        return list(best)
