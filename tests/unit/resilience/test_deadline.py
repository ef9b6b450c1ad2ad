"""
Tests for DeadlineBudget - WBS-R3.3
"""

import pytest


class TestDeadlineBudget:
    """Remaining time is recomputed on every call."""

    def test_remaining_shrinks(self, clock) -> None:
        """remaining() tracks the clock."""
        from llm_reliability.resilience.deadline import DeadlineBudget

        budget = DeadlineBudget(10.0, clock=clock)
        clock.advance(4)

        assert budget.remaining() == pytest.approx(6.0)
        assert budget.elapsed() == pytest.approx(4.0)
        assert budget.expired() is False

    def test_expires_at_limit(self, clock) -> None:
        """The budget is expired once elapsed reaches the timeout."""
        from llm_reliability.resilience.deadline import DeadlineBudget

        budget = DeadlineBudget(10.0, clock=clock)
        clock.advance(10)

        assert budget.expired() is True
        assert budget.remaining() == 0.0

    def test_remaining_never_negative(self, clock) -> None:
        """remaining() floors at zero."""
        from llm_reliability.resilience.deadline import DeadlineBudget

        budget = DeadlineBudget(1.0, clock=clock)
        clock.advance(5)

        assert budget.remaining() == 0.0

    def test_unbounded(self, clock) -> None:
        """None means no deadline at all."""
        from llm_reliability.resilience.deadline import DeadlineBudget

        budget = DeadlineBudget(None, clock=clock)
        clock.advance(10_000)

        assert budget.remaining() is None
        assert budget.expired() is False
        assert budget.bounded is False

    def test_rejects_non_positive_timeout(self) -> None:
        """A zero or negative timeout is a configuration error."""
        from llm_reliability.resilience.deadline import DeadlineBudget

        with pytest.raises(ValueError):
            DeadlineBudget(0)
