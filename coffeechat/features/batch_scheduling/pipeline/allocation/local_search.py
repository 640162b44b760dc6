"""
Fairness local search over a greedy allocation.

Satisfaction of a contact is the sum of its assigned slot scores. We keep
trading one slot between the least satisfied contact and the most satisfied
ones while the trade lowers the variance of satisfaction without lowering
the minimum. The set of reserved intervals never changes, only who holds
them, so organizer-level exclusivity is preserved by construction.
"""

from __future__ import annotations

import statistics
from datetime import timedelta

from coffeechat.features.batch_scheduling.domain.models import (
    Allocation,
    LocalSearchResult,
    QualityMatrix,
    ScoredSlot,
)
from coffeechat.features.batch_scheduling.pipeline.matrix import sort_key
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

EPSILON = 1e-9


def population_std(values: list[float]) -> float:
    return statistics.pstdev(values) if len(values) > 1 else 0.0


class FairnessLocalSearch:
    def __init__(self, buffer: timedelta, iteration_budget_per_contact: int = 25):
        self.buffer = buffer
        self.iteration_budget_per_contact = iteration_budget_per_contact

    def improve(self, allocation: Allocation, matrix: QualityMatrix) -> LocalSearchResult:
        assignments = {
            contact_id: list(slots)
            for contact_id, slots in allocation.assignments.items()
            if slots
        }
        viable = {
            contact_id: {(slot.start, slot.end): slot for slot in matrix.get(contact_id, [])}
            for contact_id in assignments
        }

        satisfaction = {cid: sum(s.score for s in slots) for cid, slots in assignments.items()}
        std_before = population_std(list(satisfaction.values()))
        budget = self.iteration_budget_per_contact * len(assignments)
        iterations = 0
        swaps = 0

        while iterations < budget and len(assignments) > 1:
            swap, iterations = self._find_swap(
                assignments, viable, satisfaction, iterations, budget
            )
            if swap is None:
                break
            low, high, give, take, low_gets, high_gets = swap
            assignments[low] = sorted(
                [slot for slot in assignments[low] if slot is not give] + [low_gets], key=sort_key
            )
            assignments[high] = sorted(
                [slot for slot in assignments[high] if slot is not take] + [high_gets], key=sort_key
            )
            satisfaction[low] = sum(slot.score for slot in assignments[low])
            satisfaction[high] = sum(slot.score for slot in assignments[high])
            swaps += 1

        std_after = population_std(list(satisfaction.values()))

        improved = Allocation(
            assignments={
                contact_id: assignments.get(contact_id, [])
                for contact_id in allocation.assignments
            },
            shortfalls=dict(allocation.shortfalls),
            relaxation_levels=dict(allocation.relaxation_levels),
        )

        logger.debug(
            "Fairness local search finished",
            swaps=swaps,
            iterations=iterations,
            std_before=round(std_before, 3),
            std_after=round(std_after, 3),
        )
        return LocalSearchResult(
            allocation=improved,
            swaps=swaps,
            iterations=iterations,
            std_before=std_before,
            std_after=std_after,
        )

    def _find_swap(self, assignments, viable, satisfaction, iterations, budget):
        ranked = sorted(satisfaction, key=lambda cid: (satisfaction[cid], cid))
        low = ranked[0]
        current_variance = statistics.pvariance(list(satisfaction.values()))
        current_min = satisfaction[low]

        for high in reversed(ranked[1:]):
            for give in assignments[low]:
                for take in assignments[high]:
                    if iterations >= budget:
                        return None, iterations
                    iterations += 1

                    # Same slot re-scored from each receiver's point of view
                    low_gets = viable[low].get((take.start, take.end))
                    high_gets = viable[high].get((give.start, give.end))
                    if low_gets is None or high_gets is None:
                        continue
                    if not self._compatible(low_gets, assignments[low], exclude=give):
                        continue
                    if not self._compatible(high_gets, assignments[high], exclude=take):
                        continue

                    new_low = satisfaction[low] - give.score + low_gets.score
                    new_high = satisfaction[high] - take.score + high_gets.score
                    trial = dict(satisfaction)
                    trial[low] = new_low
                    trial[high] = new_high
                    new_variance = statistics.pvariance(list(trial.values()))

                    if new_variance < current_variance - EPSILON and (
                        min(trial.values()) >= current_min - EPSILON
                    ):
                        return (low, high, give, take, low_gets, high_gets), iterations

        return None, iterations

    def _compatible(self, slot: ScoredSlot, held: list[ScoredSlot], exclude: ScoredSlot) -> bool:
        return not any(
            slot.interval.overlaps(other.interval, self.buffer)
            for other in held
            if other is not exclude
        )
