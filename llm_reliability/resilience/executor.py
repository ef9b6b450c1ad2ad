"""
Reliability Executor - WBS-R3.6

Runs one logical request against an ordered list of candidate backends.

Reference Documents:
- GUIDELINES: Fallback chain pattern for provider resilience
- Release It! (Nygard): Timeouts, Circuit Breaker, Fail Fast
- Building Reactive Microservices in Java (Escoffier) Ch.6, pp.54-62

Loop:
    1. Deadline check: expired -> TotalTimeoutExceededError
    2. Plan: exhausted -> AllBackendsFailedError
       deadline passed while planning -> release trial, TotalTimeoutExceededError
    3. Invoke with the remaining budget; the call is cancelled at the deadline
    4. Classify and act:
         success                    record, close streak, return
         retryable / rate limited   record, count failure, next candidate
         backend timeout            record, count failure, next candidate
         fatal                      record, release trial, AllBackendsFailedError
         deadline cancellation      record as timeout, release trial,
                                    TotalTimeoutExceededError

Each candidate is attempted at most once per execution.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from llm_reliability.core.exceptions import (
    AllBackendsFailedError,
    TotalTimeoutExceededError,
)
from llm_reliability.models.attempts import (
    DEFAULT_ERROR_MESSAGE_MAX_LENGTH,
    AttemptTracker,
    OutcomeKind,
    Usage,
)
from llm_reliability.observability.metrics import (
    record_attempt,
    record_fallback,
    record_token_usage,
)
from llm_reliability.observability.tracing import create_span
from llm_reliability.resilience.classification import Classifier, default_classifier
from llm_reliability.resilience.circuit_breaker_store import CircuitBreakerStore
from llm_reliability.resilience.deadline import DeadlineBudget
from llm_reliability.resilience.fallback_planner import FallbackPlanner, unique_candidates

logger = logging.getLogger(__name__)

# invoke(backend_id, remaining_seconds) -> response
Invoke = Callable[[str, Optional[float]], Awaitable[Any]]
PriceFn = Callable[[str, Usage], float]


@dataclass
class ExecutionResult:
    """
    Successful execution.

    Attributes:
        response: Whatever the winning backend returned
        tracker: Every attempt and skip of the execution
    """

    response: Any
    tracker: AttemptTracker

    @property
    def chosen_backend(self) -> Optional[str]:
        return self.tracker.chosen_backend


class ReliabilityExecutor:
    """
    Fallback loop with per-backend circuit breaking and a shared deadline.

    Example:
        >>> executor = ReliabilityExecutor(InMemoryCircuitBreakerStore(), total_timeout_seconds=30)
        >>> result = await executor.run(["openai:gpt-4o", "anthropic:claude-3-haiku"], invoke)
        >>> result.chosen_backend
        'openai:gpt-4o'
    """

    def __init__(
        self,
        circuit_store: CircuitBreakerStore,
        classify: Classifier = default_classifier,
        total_timeout_seconds: Optional[float] = None,
        error_message_max_length: int = DEFAULT_ERROR_MESSAGE_MAX_LENGTH,
        price: Optional[PriceFn] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize ReliabilityExecutor.

        Args:
            circuit_store: Shared per-backend circuit breakers
            classify: Maps a raised error to an OutcomeKind
            total_timeout_seconds: Deadline across all attempts (None = unbounded)
            error_message_max_length: Truncation limit for attempt error messages
            price: Prices an attempt's usage when the backend reported no cost
            clock: Monotonic time source for the deadline and durations
        """
        self._circuit_store = circuit_store
        self._planner = FallbackPlanner(circuit_store)
        self._classify = classify
        self._total_timeout_seconds = total_timeout_seconds
        self._error_message_max_length = error_message_max_length
        self._price = price
        self._clock = clock

    @property
    def circuit_store(self) -> CircuitBreakerStore:
        return self._circuit_store

    @property
    def total_timeout_seconds(self) -> Optional[float]:
        return self._total_timeout_seconds

    def new_tracker(self, candidates: list[str]) -> AttemptTracker:
        return AttemptTracker(
            unique_candidates(candidates),
            error_message_max_length=self._error_message_max_length,
        )

    def new_budget(self) -> DeadlineBudget:
        return DeadlineBudget(self._total_timeout_seconds, clock=self._clock)

    # =========================================================================
    # Fallback Loop
    # =========================================================================

    async def run(
        self,
        candidates: list[str],
        invoke: Invoke,
        tracker: Optional[AttemptTracker] = None,
        budget: Optional[DeadlineBudget] = None,
    ) -> ExecutionResult:
        """
        Execute invoke against the candidates until one succeeds.

        Args:
            candidates: Ordered backend ids; duplicates collapse
            invoke: Async callable (backend_id, remaining_seconds) -> response
            tracker: Tracker to record into (created when omitted)
            budget: Deadline budget (created from total_timeout_seconds when omitted)

        Returns:
            ExecutionResult with the response and the tracker

        Raises:
            AllBackendsFailedError: Every candidate failed or was skipped,
                or a fatal error stopped the chain
            TotalTimeoutExceededError: The deadline passed
        """
        candidates = unique_candidates(candidates)
        tracker = tracker if tracker is not None else self.new_tracker(candidates)
        budget = budget if budget is not None else self.new_budget()
        considered: set[str] = set()
        last_error: Optional[BaseException] = None

        while True:
            if budget.expired():
                raise self._timeout_error(budget, tracker)

            plan = await self._planner.next(candidates, considered)
            for skipped in plan.skipped:
                considered.add(skipped)
                tracker.record_skip(skipped)

            if plan.exhausted:
                logger.warning(
                    "All backends failed",
                    extra={
                        "candidates": candidates,
                        "attempted": tracker.attempted_backends,
                        "skipped": tracker.skipped_backends,
                    },
                )
                raise AllBackendsFailedError(candidates, last_error, tracker)

            backend_id = plan.backend_id
            considered.add(backend_id)

            # Planning awaits the store and may have used up the budget.
            if budget.expired():
                await self._circuit_store.release(backend_id)
                logger.warning(
                    f"Deadline reached while planning, {backend_id} not invoked",
                    extra={"backend": backend_id, "elapsed": budget.elapsed()},
                )
                raise self._timeout_error(budget, tracker)

            outcome, response, error = await self._attempt(
                backend_id, invoke, tracker, budget
            )

            if outcome is OutcomeKind.SUCCESS:
                await self._circuit_store.record_success(backend_id)
                if tracker.used_fallback:
                    record_fallback(candidates[0], backend_id)
                    logger.info(
                        f"Fallback succeeded with {backend_id}",
                        extra={"primary": candidates[0], "chosen": backend_id},
                    )
                return ExecutionResult(response=response, tracker=tracker)

            last_error = error

            if outcome is OutcomeKind.FATAL:
                await self._circuit_store.release(backend_id)
                logger.error(
                    f"Fatal error from {backend_id}, not falling back",
                    extra={"backend": backend_id, "error_type": type(error).__name__},
                )
                raise AllBackendsFailedError(
                    candidates,
                    last_error,
                    tracker,
                    reason="Fatal backend error",
                ) from error

            await self._circuit_store.record_failure(backend_id)
            logger.warning(
                f"Backend {backend_id} failed ({outcome.value}), trying next",
                extra={"backend": backend_id, "outcome": outcome.value},
            )

    # =========================================================================
    # Single Attempt
    # =========================================================================

    async def _attempt(
        self,
        backend_id: str,
        invoke: Invoke,
        tracker: AttemptTracker,
        budget: DeadlineBudget,
    ) -> tuple[OutcomeKind, Any, Optional[BaseException]]:
        """
        Invoke one backend and record the attempt.

        Returns:
            (outcome, response, error) for non-deadline outcomes

        Raises:
            TotalTimeoutExceededError: The deadline cancelled the call
        """
        remaining = budget.remaining()
        sequence = tracker.attempts_count + 1
        started_at = datetime.now(timezone.utc)
        t0 = self._clock()

        def finish(
            outcome: OutcomeKind,
            usage: Optional[Usage] = None,
            error: Optional[BaseException] = None,
        ) -> None:
            usage = usage or Usage()
            cost = self._cost(backend_id, usage)
            tracker.record_attempt(
                backend_id,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                duration_ms=max(0, round((self._clock() - t0) * 1000)),
                outcome=outcome,
                usage=usage,
                cost=cost,
                error=error,
            )
            record_attempt(backend_id, outcome.value)
            record_token_usage(backend_id, usage.input_tokens, usage.output_tokens, cost)

        with create_span(
            "reliability.attempt",
            {"backend": backend_id, "sequence": sequence, "remaining_seconds": remaining},
        ) as span:
            scope = asyncio.timeout(remaining)
            try:
                async with scope:
                    response = await invoke(backend_id, remaining)
            except asyncio.CancelledError:
                # Caller cancelled the whole execution.
                await self._circuit_store.release(backend_id)
                span.set_attribute("outcome", "cancelled")
                raise
            except Exception as e:
                if scope.expired():
                    finish(OutcomeKind.TIMEOUT, error=e)
                    await self._circuit_store.release(backend_id)
                    span.set_attribute("outcome", "deadline")
                    logger.warning(
                        f"Deadline reached while waiting on {backend_id}",
                        extra={"backend": backend_id, "elapsed": budget.elapsed()},
                    )
                    raise self._timeout_error(budget, tracker) from e

                outcome = self._classify(e)
                if outcome is OutcomeKind.SUCCESS:
                    outcome = OutcomeKind.RETRYABLE
                finish(outcome, error=e)
                span.set_attribute("outcome", outcome.value)
                return outcome, None, e

            finish(OutcomeKind.SUCCESS, usage=Usage.from_response(response))
            span.set_attribute("outcome", OutcomeKind.SUCCESS.value)
            return OutcomeKind.SUCCESS, response, None

    def _cost(self, backend_id: str, usage: Usage) -> float:
        if usage.cost is not None:
            return usage.cost
        if self._price is None or (usage.input_tokens == 0 and usage.output_tokens == 0):
            return 0.0
        return self._price(backend_id, usage)

    def _timeout_error(
        self, budget: DeadlineBudget, tracker: AttemptTracker
    ) -> TotalTimeoutExceededError:
        return TotalTimeoutExceededError(
            timeout_seconds=budget.timeout_seconds or 0.0,
            elapsed_seconds=budget.elapsed(),
            tracker=tracker,
        )
