"""
Deadline Budget - WBS-R3.3

Wall-time budget for a whole execution, shared across every attempt.

Remaining time is derived from a monotonic clock on every call and never
cached, so each attempt sees exactly what is left.
"""

import time
from typing import Callable, Optional


class DeadlineBudget:
    """
    Total-timeout budget of one execution.

    A budget built with timeout_seconds=None is unbounded: remaining()
    returns None and expired() is always False.

    Example:
        >>> budget = DeadlineBudget(30.0)
        >>> budget.remaining()
        29.99...
    """

    def __init__(
        self,
        timeout_seconds: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0 or None")
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._started_at = clock()

    @property
    def timeout_seconds(self) -> Optional[float]:
        return self._timeout_seconds

    @property
    def bounded(self) -> bool:
        return self._timeout_seconds is not None

    def elapsed(self) -> float:
        """Seconds since the budget was created."""
        return self._clock() - self._started_at

    def remaining(self) -> Optional[float]:
        """Seconds left (never negative), or None when unbounded."""
        if self._timeout_seconds is None:
            return None
        return max(0.0, self._timeout_seconds - self.elapsed())

    def expired(self) -> bool:
        if self._timeout_seconds is None:
            return False
        return self.elapsed() >= self._timeout_seconds
