"""
Allocation package.

Greedy assignment of slots to contacts followed by a fairness-improving
local search.
"""

from .greedy import CancellationToken, GreedyAllocator
from .local_search import FairnessLocalSearch, population_std

__all__ = ["CancellationToken", "FairnessLocalSearch", "GreedyAllocator", "population_std"]
