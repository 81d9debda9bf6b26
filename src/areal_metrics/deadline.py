"""
Cooperative deadlines for long-running computations.

The engine never interrupts a computation from outside. Expensive loops call
Deadline.check() between units of work and abort with AnalysisTimeoutError
once the budget is spent, so a caller never receives a partial result.
"""

import time
from typing import Optional

from .exceptions import AnalysisTimeoutError


class Deadline:
    """
    A wall-clock budget measured with a monotonic clock.

    Args:
        seconds: Budget in seconds from construction. Must be positive.

    Example:
        >>> deadline = Deadline(30.0)
        >>> result = detect_corridor(coords, deadline=deadline)
    """

    def __init__(self, seconds: float):
        if seconds <= 0:
            raise ValueError("Deadline seconds must be positive")
        self.budget = float(seconds)
        self._start = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start

    @property
    def remaining(self) -> float:
        return max(0.0, self.budget - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.budget

    def check(self, stage: str) -> None:
        """Raise AnalysisTimeoutError if the budget is spent."""
        elapsed = self.elapsed
        if elapsed >= self.budget:
            raise AnalysisTimeoutError(stage, elapsed, self.budget)


def check_deadline(deadline: Optional[Deadline], stage: str) -> None:
    """No-op when no deadline was supplied."""
    if deadline is not None:
        deadline.check(stage)
