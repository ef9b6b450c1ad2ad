"""
Tests for ReliabilityExecutor - WBS-R3.6

Reference Documents:
- GUIDELINES: Fallback chain pattern for provider resilience
- Release It! (Nygard): Timeouts, Circuit Breaker, Fail Fast

This module tests:
- Fallback on retryable, rate-limited and timeout outcomes
- Immediate stop on fatal outcomes
- Planning-time skips for open circuits
- The shared deadline and cancellation of the in-flight call
- Aggregates (tokens, cost, duration, used_fallback)
- Requests served while the Redis circuit store is unreachable
"""

import asyncio

import pytest


@pytest.fixture
def circuit_store(clock):
    from llm_reliability.resilience.circuit_breaker_state_machine import CircuitPolicy
    from llm_reliability.resilience.circuit_breaker_store import InMemoryCircuitBreakerStore

    return InMemoryCircuitBreakerStore(
        CircuitPolicy(failure_threshold=2, reset_timeout_seconds=30.0), clock=clock
    )


@pytest.fixture
def executor(circuit_store):
    from llm_reliability.resilience.executor import ReliabilityExecutor

    return ReliabilityExecutor(circuit_store, total_timeout_seconds=5.0)


# =============================================================================
# Fallback Scenarios
# =============================================================================


class TestFallbackScenarios:
    """End-to-end executor scenarios."""

    @pytest.mark.asyncio
    async def test_primary_success(self, executor, scripted_invoke) -> None:
        """The primary answers: one attempt, no fallback."""
        invoke = scripted_invoke()

        result = await executor.run(["x:m", "y:m"], invoke)

        assert result.chosen_backend == "x:m"
        assert result.response["content"] == "answer from x:m"
        assert result.tracker.attempts_count == 1
        assert result.tracker.used_fallback is False
        assert invoke.called_backends == ["x:m"]

    @pytest.mark.asyncio
    async def test_retryable_then_success(self, executor, scripted_invoke) -> None:
        """X fails retryably, Y succeeds: chosen Y, two attempts, fallback used."""
        from llm_reliability.models.attempts import OutcomeKind

        invoke = scripted_invoke({"x:m": ConnectionResetError("reset")})

        result = await executor.run(["x:m", "y:m"], invoke)
        tracker = result.tracker

        assert result.chosen_backend == "y:m"
        assert tracker.attempts_count == 2
        assert tracker.used_fallback is True
        assert tracker.attempts[0].outcome is OutcomeKind.RETRYABLE
        assert tracker.attempts[0].error_class == "ConnectionResetError"
        assert tracker.attempts[1].outcome is OutcomeKind.SUCCESS

    @pytest.mark.asyncio
    async def test_rate_limit_falls_back(self, executor, scripted_invoke) -> None:
        """A rate-limited primary is recorded as such and the fallback answers."""
        from llm_reliability.core.exceptions import RateLimitError

        invoke = scripted_invoke({"x:m": RateLimitError("slow down", provider="x")})

        result = await executor.run(["x:m", "y:m"], invoke)

        assert result.tracker.attempts[0].rate_limited is True
        assert result.chosen_backend == "y:m"

    @pytest.mark.asyncio
    async def test_backend_timeout_falls_back(self, executor, scripted_invoke) -> None:
        """A backend's own timeout is a retryable timeout outcome."""
        from llm_reliability.core.exceptions import BackendTimeoutError
        from llm_reliability.models.attempts import OutcomeKind

        invoke = scripted_invoke({"x:m": BackendTimeoutError("slow", provider="x")})

        result = await executor.run(["x:m", "y:m"], invoke)

        assert result.tracker.attempts[0].outcome is OutcomeKind.TIMEOUT
        assert result.chosen_backend == "y:m"

    @pytest.mark.asyncio
    async def test_fatal_stops_immediately(self, executor, scripted_invoke) -> None:
        """X fails fatally: AllBackendsFailedError after one attempt, Y never tried."""
        from llm_reliability.core.exceptions import (
            AllBackendsFailedError,
            ContentPolicyError,
        )
        from llm_reliability.models.attempts import OutcomeKind

        invoke = scripted_invoke({"x:m": ContentPolicyError("refused")})

        with pytest.raises(AllBackendsFailedError) as exc_info:
            await executor.run(["x:m", "y:m"], invoke)

        error = exc_info.value
        assert error.tracker.attempts_count == 1
        assert error.tracker.attempts[0].outcome is OutcomeKind.FATAL
        assert isinstance(error.last_error, ContentPolicyError)
        assert invoke.called_backends == ["x:m"]

    @pytest.mark.asyncio
    async def test_single_fatal_candidate(self, executor, scripted_invoke) -> None:
        """candidates=[X], X fatal: AllBackendsFailedError with one fatal attempt."""
        from llm_reliability.core.exceptions import AllBackendsFailedError

        invoke = scripted_invoke({"x:m": TypeError("bad arguments")})

        with pytest.raises(AllBackendsFailedError) as exc_info:
            await executor.run(["x:m"], invoke)

        assert [a.outcome.value for a in exc_info.value.failed_attempts] == ["fatal"]

    @pytest.mark.asyncio
    async def test_all_retryable_failures(self, executor, scripted_invoke) -> None:
        """Every candidate fails: one attempt each, then AllBackendsFailedError."""
        from llm_reliability.core.exceptions import AllBackendsFailedError

        invoke = scripted_invoke({
            "x:m": ConnectionResetError("x"),
            "y:m": ConnectionResetError("y"),
        })

        with pytest.raises(AllBackendsFailedError) as exc_info:
            await executor.run(["x:m", "y:m"], invoke)

        assert exc_info.value.tracker.attempted_backends == ["x:m", "y:m"]
        assert str(exc_info.value.last_error) == "y"

    @pytest.mark.asyncio
    async def test_empty_candidates(self, executor, scripted_invoke) -> None:
        """No candidates: AllBackendsFailedError without attempts."""
        from llm_reliability.core.exceptions import AllBackendsFailedError

        with pytest.raises(AllBackendsFailedError) as exc_info:
            await executor.run([], scripted_invoke())

        assert exc_info.value.tracker.attempts == []


# =============================================================================
# Circuit Interaction
# =============================================================================


class TestCircuitInteraction:
    """Executor and circuit breaker interplay."""

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(
        self, executor, circuit_store, scripted_invoke
    ) -> None:
        """X open at planning time: only Y attempted, X listed as skipped."""
        await circuit_store.record_failure("x:m")
        await circuit_store.record_failure("x:m")
        invoke = scripted_invoke()

        result = await executor.run(["x:m", "y:m"], invoke)

        assert result.tracker.attempted_backends == ["y:m"]
        assert result.tracker.skipped_backends == ["x:m"]
        assert "x:m" not in invoke.called_backends
        assert result.tracker.used_fallback is True

    @pytest.mark.asyncio
    async def test_all_open(self, executor, circuit_store, scripted_invoke) -> None:
        """All circuits open: AllBackendsFailedError with zero attempts."""
        from llm_reliability.core.exceptions import AllBackendsFailedError

        for backend in ("x:m", "y:m"):
            await circuit_store.record_failure(backend)
            await circuit_store.record_failure(backend)

        with pytest.raises(AllBackendsFailedError) as exc_info:
            await executor.run(["x:m", "y:m"], scripted_invoke())

        assert exc_info.value.tracker.attempts == []
        assert exc_info.value.skipped_backends == ["x:m", "y:m"]

    @pytest.mark.asyncio
    async def test_failures_feed_the_breaker(
        self, executor, circuit_store, scripted_invoke
    ) -> None:
        """Retryable failures count; the breaker opens after the threshold."""
        from llm_reliability.core.exceptions import AllBackendsFailedError
        from llm_reliability.resilience.circuit_breaker_state_machine import (
            CircuitBreakerState,
        )

        invoke = scripted_invoke({"x:m": ConnectionResetError("down")})
        for _ in range(2):
            with pytest.raises(AllBackendsFailedError):
                await executor.run(["x:m"], invoke)

        assert await circuit_store.get_state("x:m") == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_fatal_does_not_count(
        self, executor, circuit_store, scripted_invoke
    ) -> None:
        """Fatal outcomes do not move the breaker."""
        from llm_reliability.core.exceptions import AllBackendsFailedError

        invoke = scripted_invoke({"x:m": ValueError("bad prompt")})
        for _ in range(3):
            with pytest.raises(AllBackendsFailedError):
                await executor.run(["x:m"], invoke)

        assert (await circuit_store.status("x:m"))["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(
        self, executor, circuit_store, clock, scripted_invoke
    ) -> None:
        """A successful half-open trial closes the circuit."""
        from llm_reliability.resilience.circuit_breaker_state_machine import (
            CircuitBreakerState,
        )

        await circuit_store.record_failure("x:m")
        await circuit_store.record_failure("x:m")
        clock.advance(31)

        result = await executor.run(["x:m", "y:m"], scripted_invoke())

        assert result.chosen_backend == "x:m"
        assert await circuit_store.get_state("x:m") == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_fatal_during_trial_releases_slot(
        self, executor, circuit_store, clock, scripted_invoke
    ) -> None:
        """A fatal trial neither closes nor reopens; the slot is freed."""
        from llm_reliability.core.exceptions import AllBackendsFailedError
        from llm_reliability.resilience.circuit_breaker_state_machine import (
            CircuitBreakerState,
        )

        await circuit_store.record_failure("x:m")
        await circuit_store.record_failure("x:m")
        clock.advance(31)

        with pytest.raises(AllBackendsFailedError):
            await executor.run(["x:m"], scripted_invoke({"x:m": KeyError("prompt")}))

        assert await circuit_store.get_state("x:m") == CircuitBreakerState.HALF_OPEN
        assert await circuit_store.allow("x:m") is True


# =============================================================================
# Deadline
# =============================================================================


class TestDeadline:
    """The total timeout spans all attempts."""

    @pytest.mark.asyncio
    async def test_in_flight_call_cancelled_at_deadline(
        self, circuit_store, scripted_invoke
    ) -> None:
        """A call outliving the deadline is cancelled and recorded as timeout."""
        from llm_reliability.core.exceptions import TotalTimeoutExceededError
        from llm_reliability.models.attempts import OutcomeKind
        from llm_reliability.resilience.executor import ReliabilityExecutor

        executor = ReliabilityExecutor(circuit_store, total_timeout_seconds=0.2)
        invoke = scripted_invoke(delays={"x:m": 5.0})

        with pytest.raises(TotalTimeoutExceededError) as exc_info:
            await executor.run(["x:m", "y:m"], invoke)

        error = exc_info.value
        assert error.timeout_seconds == 0.2
        assert 0.19 <= error.elapsed_seconds < 2.0
        assert error.tracker.attempts_count == 1
        assert error.tracker.attempts[0].outcome is OutcomeKind.TIMEOUT
        assert invoke.cancelled == ["x:m"]
        assert "y:m" not in invoke.called_backends

    @pytest.mark.asyncio
    async def test_deadline_cancellation_does_not_count_as_failure(
        self, circuit_store, scripted_invoke
    ) -> None:
        """The deadline is not the backend's fault."""
        from llm_reliability.core.exceptions import TotalTimeoutExceededError
        from llm_reliability.resilience.executor import ReliabilityExecutor

        executor = ReliabilityExecutor(circuit_store, total_timeout_seconds=0.1)

        with pytest.raises(TotalTimeoutExceededError):
            await executor.run(["x:m"], scripted_invoke(delays={"x:m": 5.0}))

        assert (await circuit_store.status("x:m"))["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_no_attempt_after_expiry(self, circuit_store, clock, scripted_invoke) -> None:
        """An expired budget stops before planning another attempt."""
        from llm_reliability.core.exceptions import TotalTimeoutExceededError
        from llm_reliability.resilience.executor import ReliabilityExecutor

        executor = ReliabilityExecutor(circuit_store, total_timeout_seconds=10.0, clock=clock)

        async def slow_failure(backend_id, remaining):
            clock.advance(11)
            raise ConnectionResetError("late")

        with pytest.raises(TotalTimeoutExceededError) as exc_info:
            await executor.run(["x:m", "y:m"], slow_failure)

        assert exc_info.value.tracker.attempted_backends == ["x:m"]

    @pytest.mark.asyncio
    async def test_budget_spent_while_planning(self, clock, scripted_invoke) -> None:
        """A slow breaker lookup that uses up the budget never reaches invoke."""
        from llm_reliability.core.exceptions import TotalTimeoutExceededError
        from llm_reliability.resilience.circuit_breaker_state_machine import CircuitPolicy
        from llm_reliability.resilience.circuit_breaker_store import InMemoryCircuitBreakerStore
        from llm_reliability.resilience.executor import ReliabilityExecutor

        class SlowStore(InMemoryCircuitBreakerStore):
            async def allow(self, backend_id: str) -> bool:
                admitted = await super().allow(backend_id)
                clock.advance(10)
                return admitted

        store = SlowStore(
            CircuitPolicy(failure_threshold=2, reset_timeout_seconds=30.0), clock=clock
        )
        await store.record_failure("x:m")
        await store.record_failure("x:m")
        clock.advance(31)

        executor = ReliabilityExecutor(store, total_timeout_seconds=5.0, clock=clock)
        invoke = scripted_invoke()

        with pytest.raises(TotalTimeoutExceededError) as exc_info:
            await executor.run(["x:m", "y:m"], invoke)

        assert invoke.calls == []
        assert exc_info.value.tracker.attempts_count == 0
        status = await store.status("x:m")
        assert status["state"] == "half_open"
        assert status["trial_in_flight"] is False

    @pytest.mark.asyncio
    async def test_remaining_budget_passed_to_invoke(
        self, circuit_store, clock, scripted_invoke
    ) -> None:
        """invoke receives the shrinking remaining time."""
        from llm_reliability.resilience.executor import ReliabilityExecutor

        executor = ReliabilityExecutor(circuit_store, total_timeout_seconds=10.0, clock=clock)
        seen = []

        async def invoke(backend_id, remaining):
            seen.append(remaining)
            clock.advance(3)
            if backend_id == "x:m":
                raise ConnectionResetError("x")
            return {"content": "ok"}

        await executor.run(["x:m", "y:m"], invoke)

        assert seen == [pytest.approx(10.0), pytest.approx(7.0)]

    @pytest.mark.asyncio
    async def test_unbounded_budget(self, circuit_store, scripted_invoke) -> None:
        """Without a total timeout invoke receives None."""
        from llm_reliability.resilience.executor import ReliabilityExecutor

        executor = ReliabilityExecutor(circuit_store, total_timeout_seconds=None)
        invoke = scripted_invoke()

        await executor.run(["x:m"], invoke)

        assert invoke.calls == [("x:m", None)]

    @pytest.mark.asyncio
    async def test_caller_cancellation_releases_trial(
        self, executor, circuit_store, clock, scripted_invoke
    ) -> None:
        """Cancelling the execution task frees a half-open trial."""
        await circuit_store.record_failure("x:m")
        await circuit_store.record_failure("x:m")
        clock.advance(31)

        invoke = scripted_invoke(delays={"x:m": 5.0})
        task = asyncio.create_task(executor.run(["x:m"], invoke))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await circuit_store.allow("x:m") is True


# =============================================================================
# Aggregates
# =============================================================================


class TestAggregates:
    """Tokens, cost and bounded attempts."""

    @pytest.mark.asyncio
    async def test_tokens_and_cost_include_failed_attempts(
        self, circuit_store, scripted_invoke
    ) -> None:
        """Reported costs are kept; missing costs are priced."""
        from llm_reliability.resilience.executor import ReliabilityExecutor

        def price(backend_id, usage):
            return 0.001 * (usage.input_tokens + usage.output_tokens)

        executor = ReliabilityExecutor(circuit_store, price=price)
        invoke = scripted_invoke({
            "x:m": {"usage": {"input_tokens": 100, "output_tokens": 50}, "cost": 0.25},
        })

        result = await executor.run(["x:m"], invoke)

        assert result.tracker.total_cost == pytest.approx(0.25)
        assert result.tracker.total_tokens == 150

        invoke = scripted_invoke({
            "x:m": {"usage": {"input_tokens": 10, "output_tokens": 5}},
        })
        result = await executor.run(["x:m"], invoke)

        assert result.tracker.total_cost == pytest.approx(0.015)

    @pytest.mark.asyncio
    async def test_duplicates_attempted_once(self, executor, scripted_invoke) -> None:
        """Duplicate candidates never produce a second attempt."""
        from llm_reliability.core.exceptions import AllBackendsFailedError

        invoke = scripted_invoke({
            "x:m": ConnectionResetError("x"),
            "y:m": ConnectionResetError("y"),
        })

        with pytest.raises(AllBackendsFailedError) as exc_info:
            await executor.run(["x:m", "y:m", "x:m", "y:m"], invoke)

        assert exc_info.value.tracker.attempts_count == 2
        assert invoke.called_backends == ["x:m", "y:m"]


# =============================================================================
# Circuit Store Outage
# =============================================================================


class TestCircuitStoreOutage:
    """A Redis circuit store that goes away does not fail the request."""

    @pytest.fixture
    def redis_circuits(self, redis_outage, clock):
        from llm_reliability.resilience.circuit_breaker_state_machine import CircuitPolicy
        from llm_reliability.resilience.circuit_breaker_store import RedisCircuitBreakerStore

        server, client = redis_outage
        store = RedisCircuitBreakerStore(
            client, CircuitPolicy(failure_threshold=2, reset_timeout_seconds=30.0), clock=clock
        )
        return server, store

    @pytest.mark.asyncio
    async def test_fallback_runs_with_store_down(self, redis_circuits, scripted_invoke) -> None:
        """Planning admits every backend and the fallback chain still runs."""
        from llm_reliability.resilience.executor import ReliabilityExecutor

        server, store = redis_circuits
        server.connected = False
        executor = ReliabilityExecutor(store, total_timeout_seconds=5.0)

        result = await executor.run(
            ["x:m", "y:m"], scripted_invoke({"x:m": ConnectionResetError("reset")})
        )

        assert result.chosen_backend == "y:m"
        assert result.tracker.attempts_count == 2

    @pytest.mark.asyncio
    async def test_store_lost_after_invoke(self, redis_circuits, scripted_invoke) -> None:
        """A backend answer is returned even when recording the success fails."""
        from llm_reliability.resilience.executor import ReliabilityExecutor
        from llm_reliability.services.instrumentation import CompletionStateMachine
        from llm_reliability.services.tracking_store import InMemoryTrackingStore

        server, store = redis_circuits
        answer = scripted_invoke()

        async def invoke(backend_id, remaining):
            response = await answer(backend_id, remaining)
            server.connected = False
            return response

        tracking = InMemoryTrackingStore()
        machine = CompletionStateMachine(
            ReliabilityExecutor(store, total_timeout_seconds=5.0), tracking
        )

        outcome = await machine.run(["x:m"], invoke)

        assert outcome.success is True
        assert outcome.chosen_backend == "x:m"
        assert outcome.response["content"] == "answer from x:m"
        record = await tracking.get(outcome.tracking_id)
        assert record.status.value == "success"
