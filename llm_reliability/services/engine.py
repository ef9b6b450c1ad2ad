"""
Reliability Engine - WBS-R5.4 Public Facade

Wires settings, stores, executor and instrumentation into one object exposing
run(candidates, invoke, metadata=None) -> ExecutionOutcome.

Reference Documents:
- GUIDELINES: Sinha pp. 89-91 (Dependency injection patterns)
- ANTI_PATTERN_ANALYSIS: §4.1 Extract to service class

Pattern: Factory functions with injectable collaborators, overridable in tests.
"""

import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from llm_reliability.core.config import Settings, get_settings
from llm_reliability.models.attempts import DEFAULT_ERROR_MESSAGE_MAX_LENGTH
from llm_reliability.models.execution import ExecutionOutcome
from llm_reliability.resilience.circuit_breaker_store import (
    CircuitBreakerStore,
    create_circuit_breaker_store,
)
from llm_reliability.resilience.classification import Classifier, default_classifier
from llm_reliability.resilience.executor import Invoke, ReliabilityExecutor
from llm_reliability.services.cost_tracker import CostTracker
from llm_reliability.services.instrumentation import CompletionStateMachine
from llm_reliability.services.tracking_store import (
    TrackingRecordStore,
    create_tracking_store,
)

logger = logging.getLogger(__name__)


def create_redis_client(settings: Optional[Settings] = None) -> Redis:
    """
    Create an async Redis client from settings.redis_url.

    The client connects lazily on first command.
    """
    settings = settings or get_settings()
    return redis.from_url(settings.redis_url, decode_responses=True)


class ReliabilityEngine:
    """
    Entry point of the execution engine.

    Example:
        >>> engine = ReliabilityEngine.from_settings()
        >>> outcome = await engine.run(
        ...     ["openai:gpt-4o", "anthropic:claude-3-haiku"],
        ...     backend.invoke,
        ...     metadata={"agent": "summarizer"},
        ... )
        >>> outcome.chosen_backend
        'openai:gpt-4o'
    """

    def __init__(
        self,
        circuit_store: CircuitBreakerStore,
        tracking_store: TrackingRecordStore,
        classify: Classifier = default_classifier,
        total_timeout_seconds: Optional[float] = None,
        cost_tracker: Optional[CostTracker] = None,
        record_usage: bool = False,
        error_message_max_length: int = DEFAULT_ERROR_MESSAGE_MAX_LENGTH,
    ) -> None:
        """
        Initialize ReliabilityEngine.

        Args:
            circuit_store: Shared per-backend circuit breakers
            tracking_store: Tracking record repository
            classify: Maps a raised backend error to an OutcomeKind
            total_timeout_seconds: Deadline across all attempts (None = unbounded)
            cost_tracker: Prices attempts; aggregates usage when record_usage is set
            record_usage: Aggregate per-backend usage in Redis after each run
            error_message_max_length: Truncation limit for stored error messages
        """
        self._cost_tracker = cost_tracker or CostTracker()
        self._executor = ReliabilityExecutor(
            circuit_store,
            classify=classify,
            total_timeout_seconds=total_timeout_seconds,
            error_message_max_length=error_message_max_length,
            price=self._cost_tracker.price_usage,
        )
        self._state_machine = CompletionStateMachine(
            self._executor,
            tracking_store,
            cost_tracker=self._cost_tracker if record_usage else None,
            error_message_max_length=error_message_max_length,
        )

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        redis_client: Optional[Redis] = None,
        classify: Classifier = default_classifier,
    ) -> "ReliabilityEngine":
        """
        Build an engine from Settings.

        A Redis client is created from settings.redis_url when any Redis-backed
        component is selected and none was passed in.

        Args:
            settings: Settings instance (defaults to get_settings())
            redis_client: Shared async Redis client
            classify: Error classifier

        Returns:
            Configured ReliabilityEngine
        """
        settings = settings or get_settings()
        needs_redis = (
            settings.circuit_breaker_backend == "redis"
            or settings.tracking_store_backend == "redis"
            or settings.usage_tracking_enabled
        )
        if needs_redis and redis_client is None:
            redis_client = create_redis_client(settings)

        logger.info(
            "Building reliability engine",
            extra={
                "circuit_backend": settings.circuit_breaker_backend,
                "tracking_backend": settings.tracking_store_backend,
                "total_timeout_seconds": settings.total_timeout_seconds,
            },
        )

        return cls(
            circuit_store=create_circuit_breaker_store(settings, redis_client),
            tracking_store=create_tracking_store(settings, redis_client),
            classify=classify,
            total_timeout_seconds=settings.total_timeout_seconds,
            cost_tracker=CostTracker(redis_client),
            record_usage=settings.usage_tracking_enabled,
            error_message_max_length=settings.error_message_max_length,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def executor(self) -> ReliabilityExecutor:
        return self._executor

    @property
    def circuit_store(self) -> CircuitBreakerStore:
        return self._executor.circuit_store

    @property
    def tracking_store(self) -> TrackingRecordStore:
        return self._state_machine.store

    @property
    def cost_tracker(self) -> CostTracker:
        return self._cost_tracker

    # =========================================================================
    # Operations
    # =========================================================================

    async def run(
        self,
        candidates: list[str],
        invoke: Invoke,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ExecutionOutcome:
        """
        Execute invoke against the candidates with fallback and tracking.

        Args:
            candidates: Ordered backend ids, primary first
            invoke: Async callable (backend_id, remaining_seconds) -> response
            metadata: Caller context stored on the tracking record

        Returns:
            ExecutionOutcome of the successful execution

        Raises:
            AllBackendsFailedError: No backend answered; .outcome summarizes it
            TotalTimeoutExceededError: Deadline passed; .outcome summarizes it
        """
        return await self._state_machine.run(candidates, invoke, metadata=metadata)

    async def circuit_status(self, backend_ids: list[str]) -> list[dict[str, Any]]:
        """Diagnostic circuit status of each backend."""
        return [await self.circuit_store.status(b) for b in backend_ids]

    async def reset_circuit(self, backend_id: str) -> None:
        """Manually close a backend's circuit."""
        await self.circuit_store.reset(backend_id)
        logger.info(f"Circuit reset for {backend_id}", extra={"circuit": backend_id})
