"""
Tests for Execution Models - WBS-R2.3, WBS-R2.4
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError


NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def tracker_with_fallback():
    from llm_reliability.models.attempts import AttemptTracker, OutcomeKind, Usage

    tracker = AttemptTracker(["a:m", "b:m", "c:m"])
    tracker.record_skip("a:m")
    tracker.record_attempt("b:m", NOW, NOW, 30, OutcomeKind.RETRYABLE,
                           usage=Usage(input_tokens=3), error=OSError("reset"))
    tracker.record_attempt("c:m", NOW, NOW, 20, OutcomeKind.SUCCESS,
                           usage=Usage(input_tokens=4, output_tokens=6), cost=0.5)
    return tracker


class TestExecutionStatus:
    """Tests for tracking record status values."""

    def test_only_running_is_non_terminal(self):
        """running is the only non-terminal status."""
        from llm_reliability.models.execution import ExecutionStatus

        assert not ExecutionStatus.RUNNING.is_terminal
        assert all(
            s.is_terminal for s in ExecutionStatus if s is not ExecutionStatus.RUNNING
        )


class TestExecutionTrackingRecord:
    """Tests for the persisted record schema."""

    def test_defaults(self):
        """A new record is running with zero totals."""
        from llm_reliability.models.execution import ExecutionStatus, ExecutionTrackingRecord

        record = ExecutionTrackingRecord(id="r1", started_at=NOW)

        assert record.status is ExecutionStatus.RUNNING
        assert record.attempts_count == 0
        assert record.completed_at is None

    def test_status_is_validated(self):
        """Unknown statuses are rejected."""
        from llm_reliability.models.execution import ExecutionTrackingRecord

        with pytest.raises(ValidationError):
            ExecutionTrackingRecord(id="r1", started_at=NOW, status="paused")

    def test_tracker_fields(self):
        """tracker_fields() mirrors the tracker aggregates."""
        from llm_reliability.models.execution import tracker_fields

        fields = tracker_fields(tracker_with_fallback())

        assert fields["chosen_backend"] == "c:m"
        assert fields["attempts_count"] == 2
        assert fields["input_tokens"] == 7
        assert fields["output_tokens"] == 6
        assert fields["total_cost"] == 0.5
        assert fields["used_fallback"] is True
        assert fields["skipped_backends"] == ["a:m"]
        assert len(fields["attempts"]) == 2


class TestExecutionOutcome:
    """Tests for the caller-facing summary."""

    def test_from_tracker_success(self):
        """A successful outcome mirrors the tracker."""
        from llm_reliability.models.execution import ExecutionOutcome

        outcome = ExecutionOutcome.from_tracker(
            tracker_with_fallback(), success=True, response={"content": "hi"}, duration_ms=75
        )

        assert outcome.success is True
        assert outcome.chosen_backend == "c:m"
        assert outcome.attempts_count == 2
        assert len(outcome.failed_attempts) == 1
        assert outcome.duration_ms == 75
        assert outcome.response == {"content": "hi"}

    def test_duration_defaults_to_attempt_sum(self):
        """Without an explicit duration the attempt durations are summed."""
        from llm_reliability.models.execution import ExecutionOutcome

        outcome = ExecutionOutcome.from_tracker(tracker_with_fallback(), success=True)

        assert outcome.duration_ms == 50

    def test_from_error_uses_annotations(self):
        """from_error picks up duration and tracking id set on the error."""
        from llm_reliability.core.exceptions import AllBackendsFailedError
        from llm_reliability.models.execution import ExecutionOutcome

        error = AllBackendsFailedError(["a:m"], tracker=tracker_with_fallback())
        error.duration_ms = 120
        error.tracking_id = "rec-1"

        outcome = ExecutionOutcome.from_error(error)

        assert outcome.success is False
        assert outcome.duration_ms == 120
        assert outcome.tracking_id == "rec-1"
        assert outcome.error_kind == "all_backends_failed"
