"""
Custom exceptions for LLM Reliability.

WBS-R1.3: Custom Exceptions

This module provides the exception hierarchy for the reliability engine.
All exceptions inherit from LLMReliabilityException and include error codes
for consistent error handling and logging.

Two families live here:
- Backend errors: raised by invoke capabilities, understood by the default
  error classifier (rate limits, timeouts, policy violations, ...).
- Engine errors: raised by the executor to the caller. A caller only ever sees
  AllBackendsFailedError or TotalTimeoutExceededError for a failed execution.

Reference:
- GUIDELINES: Specific exceptions, always capture with 'as e'
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from llm_reliability.models.attempts import AttemptRecord, AttemptTracker
    from llm_reliability.models.execution import ExecutionOutcome


# =============================================================================
# WBS-R1.3.1: Error Codes Enum
# =============================================================================


class ErrorCode(str, Enum):
    """
    Error codes for LLM Reliability exceptions.

    These codes provide a consistent way to identify error types in logs
    and in persisted tracking records.
    """

    RELIABILITY_ERROR = "RELIABILITY_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    BACKEND_TIMEOUT = "BACKEND_TIMEOUT"
    CONTENT_POLICY_ERROR = "CONTENT_POLICY_ERROR"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ALL_BACKENDS_FAILED = "ALL_BACKENDS_FAILED"
    TOTAL_TIMEOUT_EXCEEDED = "TOTAL_TIMEOUT_EXCEEDED"
    INCOMPLETE_EXECUTION = "INCOMPLETE_EXECUTION"
    TRACKING_STORE_ERROR = "TRACKING_STORE_ERROR"


# =============================================================================
# WBS-R1.3.2: Base Exception
# =============================================================================


class LLMReliabilityException(Exception):
    """
    Base exception for all LLM Reliability errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code from ErrorCode enum.
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCode.RELIABILITY_ERROR,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            **kwargs: Additional attributes to set on the exception.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

        for key, value in kwargs.items():
            setattr(self, key, value)


# =============================================================================
# WBS-R1.3.3: Backend Errors
# =============================================================================


class ProviderError(LLMReliabilityException):
    """
    Exception for backend provider issues.

    Raised by invoke capabilities when a backend call fails. The default
    classifier uses status_code to tell transient (5xx, 429) from fatal
    (400, 422) failures.

    Attributes:
        provider: Backend identifier (e.g., "openai:gpt-4o").
        status_code: HTTP status code from the provider API (if applicable).
    """

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        error_code: str = ErrorCode.PROVIDER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_code, **kwargs)
        self.provider = provider
        self.status_code = status_code


class RateLimitError(ProviderError):
    """
    Exception for backend rate limiting (HTTP 429).

    Attributes:
        retry_after: Seconds until the rate limit resets, if the backend said.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            provider=provider,
            status_code=429,
            error_code=ErrorCode.RATE_LIMIT_ERROR,
            **kwargs,
        )
        self.retry_after = retry_after


class BackendTimeoutError(ProviderError):
    """Raised by an invoke capability when its own per-call deadline passed."""

    def __init__(self, message: str, provider: str, **kwargs: Any) -> None:
        super().__init__(
            message,
            provider=provider,
            error_code=ErrorCode.BACKEND_TIMEOUT,
            **kwargs,
        )


class ContentPolicyError(LLMReliabilityException):
    """Request rejected by a content policy. Not backend-specific."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, ErrorCode.CONTENT_POLICY_ERROR, **kwargs)


class BudgetExceededError(LLMReliabilityException):
    """
    Spend limit reached before or during the call.

    Attributes:
        scope: Budget scope that was exceeded (e.g., "global_daily").
        limit: Budget limit in USD.
        current: Current spend in USD.
    """

    def __init__(
        self,
        scope: str,
        limit: float,
        current: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"Budget exceeded for {scope}: limit ${limit}, current ${current}",
            ErrorCode.BUDGET_EXCEEDED,
            **kwargs,
        )
        self.scope = scope
        self.limit = limit
        self.current = current


class RequestValidationError(LLMReliabilityException):
    """
    Malformed request detected before or by the backend.

    Attributes:
        field: Name of the field that failed validation.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, ErrorCode.VALIDATION_ERROR, **kwargs)
        self.field = field


# =============================================================================
# WBS-R1.3.4: Engine Errors
# =============================================================================


class ReliabilityError(LLMReliabilityException):
    """
    Base class for classified execution failures.

    Carries the AttemptTracker so callers can still persist or inspect
    partial metrics of a failed execution.

    Attributes:
        kind: Stable failure kind name, set per subclass.
    """

    kind: str = "reliability_error"

    def __init__(
        self,
        message: str,
        error_code: str,
        tracker: Optional["AttemptTracker"] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_code, **kwargs)
        self.tracker = tracker

    @property
    def failed_attempts(self) -> list["AttemptRecord"]:
        """Attempts that did not succeed."""
        if self.tracker is None:
            return []
        return self.tracker.failed_attempts

    @property
    def outcome(self) -> "ExecutionOutcome":
        """Caller-facing summary of the failed execution."""
        from llm_reliability.models.execution import ExecutionOutcome

        return ExecutionOutcome.from_error(self)


class AllBackendsFailedError(ReliabilityError):
    """
    Raised when every candidate failed, was skipped, or a fatal error stopped
    the fallback chain.

    Attributes:
        candidates: Ordered candidate list of the execution.
        skipped_backends: Candidates skipped because their circuit was open.
        last_error: The last backend error, if any attempt was made.
    """

    kind = "all_backends_failed"

    def __init__(
        self,
        candidates: list[str],
        last_error: Optional[BaseException] = None,
        tracker: Optional["AttemptTracker"] = None,
        reason: str = "All backends failed",
    ) -> None:
        self.candidates = list(candidates)
        self.last_error = last_error
        self.skipped_backends = list(tracker.skipped_backends) if tracker else []

        message = f"{reason}: {', '.join(self.candidates) or '<none>'}"
        if last_error is not None:
            message += f". Last error: {type(last_error).__name__}: {last_error}"
        super().__init__(message, ErrorCode.ALL_BACKENDS_FAILED, tracker=tracker)


class TotalTimeoutExceededError(ReliabilityError):
    """
    Raised when the total deadline across all attempts is exceeded.

    Attributes:
        timeout_seconds: The configured total timeout.
        elapsed_seconds: Wall-clock time elapsed when the deadline tripped.
    """

    kind = "total_timeout_exceeded"

    def __init__(
        self,
        timeout_seconds: float,
        elapsed_seconds: float,
        tracker: Optional["AttemptTracker"] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"Total timeout of {timeout_seconds}s exceeded "
            f"(elapsed: {elapsed_seconds:.2f}s)",
            ErrorCode.TOTAL_TIMEOUT_EXCEEDED,
            tracker=tracker,
        )


class IncompleteExecutionError(LLMReliabilityException):
    """
    Placeholder error for a record that is being force-finalized without any
    known originating error.

    Attributes:
        stack: Formatted call stack at the point the placeholder was created.
    """

    def __init__(self, stack: str) -> None:
        super().__init__(
            "Execution ended without reaching a terminal status",
            ErrorCode.INCOMPLETE_EXECUTION,
        )
        self.stack = stack


# =============================================================================
# WBS-R1.3.5: Storage Errors
# =============================================================================


class TrackingStoreError(LLMReliabilityException):
    """Raised when a tracking-record store operation fails."""

    def __init__(self, message: str, record_id: str | None = None) -> None:
        super().__init__(message, ErrorCode.TRACKING_STORE_ERROR)
        self.record_id = record_id
