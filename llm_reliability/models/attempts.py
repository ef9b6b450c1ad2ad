"""
Attempt Models - WBS-R2.1 AttemptRecord, WBS-R2.2 AttemptTracker

This module contains the per-attempt outcome taxonomy, the immutable record of
one backend call, and the tracker that aggregates one execution's attempts.

Pattern: Domain models as value objects (Percival & Gregory pp. 59-65)
Pattern: Pydantic for validation at boundaries (Sinha pp. 193-195)

Invariants:
- AttemptRecord is frozen once created.
- AttemptTracker is append-only; every aggregate is recomputed from the
  sequence on read.
- Backends skipped because of an open circuit are listed separately and never
  appear as an AttemptRecord.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

DEFAULT_ERROR_MESSAGE_MAX_LENGTH = 1000


# =============================================================================
# WBS-R2.1.1: OutcomeKind
# =============================================================================


class OutcomeKind(str, Enum):
    """
    Closed outcome taxonomy for one backend attempt.

    Produced by a single classifier; the executor never inspects error
    identities itself.
    """

    SUCCESS = "success"
    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    FATAL = "fatal"

    @property
    def is_failure(self) -> bool:
        return self is not OutcomeKind.SUCCESS

    @property
    def is_retryable(self) -> bool:
        """Whether a different backend may still succeed after this outcome."""
        return self in (
            OutcomeKind.RETRYABLE,
            OutcomeKind.RATE_LIMITED,
            OutcomeKind.TIMEOUT,
        )


# =============================================================================
# WBS-R2.1.2: Usage
# =============================================================================


class Usage(BaseModel):
    """
    Token usage and optional backend-reported cost of one attempt.

    Attributes:
        input_tokens: Prompt tokens consumed.
        output_tokens: Completion tokens produced.
        cached_tokens: Prompt tokens served from the provider cache.
        cost: Cost in USD if the backend reported one.
    """

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cached_tokens: int = Field(default=0, ge=0)
    cost: Optional[float] = Field(default=None, ge=0.0)

    model_config = {"frozen": True}

    @classmethod
    def from_response(cls, response: Any) -> "Usage":
        """
        Read usage from a backend response without trusting its shape.

        Missing or malformed attributes count as zero.
        """
        if response is None:
            return cls()
        if isinstance(response, Usage):
            return response

        if isinstance(response, dict):
            source = response.get("usage") or response
        else:
            source = getattr(response, "usage", None) or response
        return cls(
            input_tokens=_safe_int(source, "input_tokens", "prompt_tokens"),
            output_tokens=_safe_int(source, "output_tokens", "completion_tokens"),
            cached_tokens=_safe_int(source, "cached_tokens"),
            cost=_safe_cost(response),
        )


def _safe_int(source: Any, *names: str) -> int:
    for name in names:
        value = source.get(name) if isinstance(source, dict) else getattr(source, name, None)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
    return 0


def _safe_cost(response: Any) -> Optional[float]:
    value = response.get("cost") if isinstance(response, dict) else getattr(response, "cost", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return float(value)
    return None


# =============================================================================
# WBS-R2.1.3: AttemptRecord
# =============================================================================


class AttemptRecord(BaseModel):
    """
    Immutable outcome of one backend invocation.

    Attributes:
        backend_id: Backend the attempt was made against.
        sequence: 1-based position within the execution.
        started_at / completed_at: Wall-clock timestamps (UTC).
        duration_ms: Elapsed milliseconds, rounded to the nearest integer.
        outcome: Classified outcome.
        input_tokens / output_tokens / cached_tokens: Token usage.
        cost: Cost in USD (reported by the backend or priced from tokens).
        error_class: Exception class name of a failed attempt.
        error_message: Truncated exception message of a failed attempt.
        rate_limited: Outcome was a rate limit.
        retryable: Another backend may still succeed after this outcome.
    """

    backend_id: str
    sequence: int = Field(..., ge=1)
    started_at: datetime
    completed_at: datetime
    duration_ms: int = Field(..., ge=0)
    outcome: OutcomeKind
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    cost: float = 0.0
    error_class: Optional[str] = None
    error_message: Optional[str] = None
    rate_limited: bool = False
    retryable: bool = False

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> bool:
        return self.outcome is OutcomeKind.SUCCESS

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# =============================================================================
# WBS-R2.2: AttemptTracker
# =============================================================================


class AttemptTracker:
    """
    Aggregates one execution's attempt sequence.

    Owned by exactly one execution; not safe to share across executions.

    Example:
        >>> tracker = AttemptTracker(["openai:gpt-4o", "anthropic:claude-3-haiku"])
        >>> tracker.record_attempt("openai:gpt-4o", started_at, 120, OutcomeKind.RATE_LIMITED,
        ...                        error=RateLimitError("slow down", provider="openai"))
        >>> tracker.attempts_count
        1
    """

    def __init__(
        self,
        candidates: list[str],
        error_message_max_length: int = DEFAULT_ERROR_MESSAGE_MAX_LENGTH,
    ) -> None:
        self._candidates = list(candidates)
        self._error_message_max_length = error_message_max_length
        self._attempts: list[AttemptRecord] = []
        self._skipped: list[str] = []

    # =========================================================================
    # Recording
    # =========================================================================

    def record_attempt(
        self,
        backend_id: str,
        started_at: datetime,
        completed_at: datetime,
        duration_ms: int,
        outcome: OutcomeKind,
        usage: Optional[Usage] = None,
        cost: float = 0.0,
        error: Optional[BaseException] = None,
    ) -> AttemptRecord:
        """
        Append the record of a finished attempt.

        Args:
            backend_id: Backend that was invoked
            started_at: When the invocation began
            completed_at: When it returned, raised, or was cancelled
            duration_ms: Rounded elapsed milliseconds
            outcome: Classified outcome
            usage: Token usage, if any was reported
            cost: Cost in USD of this attempt
            error: The raised error for failed attempts

        Returns:
            The appended AttemptRecord
        """
        usage = usage or Usage()
        record = AttemptRecord(
            backend_id=backend_id,
            sequence=len(self._attempts) + 1,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            outcome=outcome,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cached_tokens=usage.cached_tokens,
            cost=cost,
            error_class=type(error).__name__ if error is not None else None,
            error_message=self._truncate(str(error)) if error is not None else None,
            rate_limited=outcome is OutcomeKind.RATE_LIMITED,
            retryable=outcome.is_retryable,
        )
        self._attempts.append(record)
        return record

    def record_skip(self, backend_id: str) -> None:
        """Remember a candidate skipped at planning time (circuit open)."""
        self._skipped.append(backend_id)

    def _truncate(self, message: str) -> str:
        limit = self._error_message_max_length
        if len(message) <= limit:
            return message
        return message[: limit - 3] + "..."

    # =========================================================================
    # Sequence Access
    # =========================================================================

    @property
    def candidates(self) -> list[str]:
        return list(self._candidates)

    @property
    def attempts(self) -> list[AttemptRecord]:
        return list(self._attempts)

    @property
    def skipped_backends(self) -> list[str]:
        return list(self._skipped)

    @property
    def attempted_backends(self) -> list[str]:
        return [a.backend_id for a in self._attempts]

    @property
    def failed_attempts(self) -> list[AttemptRecord]:
        return [a for a in self._attempts if not a.succeeded]

    @property
    def successful_attempt(self) -> Optional[AttemptRecord]:
        return next((a for a in self._attempts if a.succeeded), None)

    @property
    def last_failed_attempt(self) -> Optional[AttemptRecord]:
        return next((a for a in reversed(self._attempts) if not a.succeeded), None)

    # =========================================================================
    # Aggregates
    # =========================================================================

    @property
    def attempts_count(self) -> int:
        return len(self._attempts)

    @property
    def chosen_backend(self) -> Optional[str]:
        """Backend of the successful attempt, else the last one attempted."""
        success = self.successful_attempt
        if success is not None:
            return success.backend_id
        if self._attempts:
            return self._attempts[-1].backend_id
        return None

    @property
    def used_fallback(self) -> bool:
        chosen = self.chosen_backend
        if chosen is None or not self._candidates:
            return False
        return chosen != self._candidates[0]

    @property
    def total_input_tokens(self) -> int:
        return sum(a.input_tokens for a in self._attempts)

    @property
    def total_output_tokens(self) -> int:
        return sum(a.output_tokens for a in self._attempts)

    @property
    def total_cached_tokens(self) -> int:
        return sum(a.cached_tokens for a in self._attempts)

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    @property
    def total_cost(self) -> float:
        return sum(a.cost for a in self._attempts)

    @property
    def total_duration_ms(self) -> int:
        return sum(a.duration_ms for a in self._attempts)

    def to_json_array(self) -> list[dict[str, Any]]:
        """Attempts as JSON-compatible dicts for persistence."""
        return [a.model_dump(mode="json") for a in self._attempts]
