"""
Execution Models - WBS-R2.3 Tracking Record, WBS-R2.4 Execution Outcome

This module contains the persisted tracking-record schema and the
caller-facing summary of an execution.

Pattern: Pydantic for validation at API boundaries (Sinha pp. 193-195)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

from llm_reliability.models.attempts import AttemptRecord, AttemptTracker

if TYPE_CHECKING:
    from llm_reliability.core.exceptions import ReliabilityError


# =============================================================================
# WBS-R2.3.1: ExecutionStatus
# =============================================================================


class ExecutionStatus(str, Enum):
    """
    Status of a tracking record.

    RUNNING is the only non-terminal value; a record moves from RUNNING to
    exactly one terminal value and never changes afterwards.
    """

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


# =============================================================================
# WBS-R2.3.2: ExecutionTrackingRecord
# =============================================================================


class ExecutionTrackingRecord(BaseModel):
    """
    One row per top-level call, owned by a TrackingRecordStore.

    Attributes:
        id: Store-assigned record identifier.
        status: Current status.
        candidates: Ordered candidate backends of the call.
        started_at / completed_at: Wall-clock timestamps (UTC).
        duration_ms: Execution duration across all attempts.
        chosen_backend: Backend that answered, else the last one attempted.
        attempts_count: Number of AttemptRecords.
        input_tokens / output_tokens / cached_tokens: Totals over all attempts.
        total_cost: Cost in USD over all attempts.
        used_fallback: chosen_backend differs from the first candidate.
        attempts: Serialized AttemptRecords.
        skipped_backends: Candidates skipped because their circuit was open.
        error_class / error_message: Details of a failed execution.
        metadata: Caller-supplied context (agent name, tenant, ...).
    """

    id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    candidates: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    chosen_backend: Optional[str] = None
    attempts_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_cost: float = 0.0
    used_fallback: bool = False
    attempts: list[dict[str, Any]] = Field(default_factory=list)
    skipped_backends: list[str] = Field(default_factory=list)
    error_class: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def tracker_fields(tracker: AttemptTracker) -> dict[str, Any]:
    """Aggregate fields of a tracker, shaped for a tracking-record update."""
    return {
        "chosen_backend": tracker.chosen_backend,
        "attempts_count": tracker.attempts_count,
        "input_tokens": tracker.total_input_tokens,
        "output_tokens": tracker.total_output_tokens,
        "cached_tokens": tracker.total_cached_tokens,
        "total_cost": tracker.total_cost,
        "used_fallback": tracker.used_fallback,
        "attempts": tracker.to_json_array(),
        "skipped_backends": tracker.skipped_backends,
    }


# =============================================================================
# WBS-R2.4: ExecutionOutcome
# =============================================================================


class ExecutionOutcome(BaseModel):
    """
    Caller-facing summary of one execution.

    Attributes:
        success: Whether a backend answered.
        response: The backend response on success.
        chosen_backend: Backend that answered, else the last one attempted.
        attempts: All attempts in invocation order.
        failed_attempts: Attempts that did not succeed.
        skipped_backends: Candidates skipped because their circuit was open.
        input_tokens / output_tokens / cached_tokens / total_cost: Totals.
        duration_ms: Execution duration.
        used_fallback: Whether a fallback backend was chosen.
        error_kind: "all_backends_failed" or "total_timeout_exceeded" on failure.
        tracking_id: Tracking record id, if one was created.
    """

    success: bool
    response: Any = None
    chosen_backend: Optional[str] = None
    attempts: list[AttemptRecord] = Field(default_factory=list)
    failed_attempts: list[AttemptRecord] = Field(default_factory=list)
    skipped_backends: list[str] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_cost: float = 0.0
    duration_ms: int = 0
    used_fallback: bool = False
    error_kind: Optional[str] = None
    tracking_id: Optional[str] = None

    model_config = {"arbitrary_types_allowed": True}

    @property
    def attempts_count(self) -> int:
        return len(self.attempts)

    @classmethod
    def from_tracker(
        cls,
        tracker: AttemptTracker,
        *,
        success: bool,
        response: Any = None,
        duration_ms: Optional[int] = None,
        error_kind: Optional[str] = None,
        tracking_id: Optional[str] = None,
    ) -> "ExecutionOutcome":
        return cls(
            success=success,
            response=response,
            chosen_backend=tracker.chosen_backend,
            attempts=tracker.attempts,
            failed_attempts=tracker.failed_attempts,
            skipped_backends=tracker.skipped_backends,
            input_tokens=tracker.total_input_tokens,
            output_tokens=tracker.total_output_tokens,
            cached_tokens=tracker.total_cached_tokens,
            total_cost=tracker.total_cost,
            duration_ms=(
                duration_ms if duration_ms is not None else tracker.total_duration_ms
            ),
            used_fallback=tracker.used_fallback,
            error_kind=error_kind,
            tracking_id=tracking_id,
        )

    @classmethod
    def from_error(cls, error: "ReliabilityError") -> "ExecutionOutcome":
        tracker = error.tracker or AttemptTracker([])
        return cls.from_tracker(
            tracker,
            success=False,
            duration_ms=getattr(error, "duration_ms", None),
            error_kind=error.kind,
            tracking_id=getattr(error, "tracking_id", None),
        )
