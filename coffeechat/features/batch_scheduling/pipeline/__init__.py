"""
Allocation pipeline for batch scheduling.

availability -> scoring -> matrix -> allocation. Every stage is a pure
function of its inputs so a batch can be replayed from the same data.
"""

__all__ = ["allocation", "availability", "matrix", "scoring"]
