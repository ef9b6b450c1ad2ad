"""
Circuit Breaker Store - WBS-R3.2

Keeps one circuit per backend identifier, shared by every execution that
targets that backend.

Reference Documents:
- Release It! (Nygard): Circuit breakers must be shared per integration point
- GUIDELINES pp. 949: Repository pattern - "hides the boring details of data access"
- GUIDELINES pp. 2153: "production systems often require external state stores (Redis)"

Implementations:
- InMemoryCircuitBreakerStore: per-process, one asyncio.Lock per backend
- RedisCircuitBreakerStore: cross-process, one hash per backend updated
  inside an optimistic WATCH/MULTI transaction

Both run the transition rules from circuit_breaker_state_machine.py.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from llm_reliability.core.config import Settings
from llm_reliability.resilience.circuit_breaker_state_machine import (
    CircuitBreakerState,
    CircuitBreakerStateMachine,
    CircuitPolicy,
    CircuitSnapshot,
    apply_failure,
    apply_release,
    apply_success,
    decide_allow,
    report_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "llm_reliability:circuit:"
MAX_TRANSACTION_RETRIES = 50


# =============================================================================
# WBS-R3.2.1: CircuitBreakerStore Interface
# =============================================================================


class CircuitBreakerStore(ABC):
    """
    Abstract per-backend circuit breaker registry.

    allow(), record_success(), record_failure() and release() never raise.
    A store that cannot reach its backing state fails open: allow() admits
    the call and outcome recording is skipped with a warning. A False return
    from allow() means the backend is skipped at planning time.

    get_state(), status() and reset() are operator calls and propagate
    storage errors.
    """

    def __init__(self, policy: Optional[CircuitPolicy] = None) -> None:
        self._policy = policy or CircuitPolicy()

    @property
    def policy(self) -> CircuitPolicy:
        return self._policy

    @abstractmethod
    async def allow(self, backend_id: str) -> bool:
        """Whether a call against backend_id may start now."""
        ...

    @abstractmethod
    async def record_success(self, backend_id: str) -> None:
        ...

    @abstractmethod
    async def record_failure(self, backend_id: str) -> None:
        ...

    @abstractmethod
    async def release(self, backend_id: str) -> None:
        """Free an in-flight half-open trial without a verdict."""
        ...

    @abstractmethod
    async def get_state(self, backend_id: str) -> CircuitBreakerState:
        ...

    @abstractmethod
    async def reset(self, backend_id: str) -> None:
        ...

    @abstractmethod
    async def status(self, backend_id: str) -> dict[str, Any]:
        ...


# =============================================================================
# WBS-R3.2.2: In-Memory Store
# =============================================================================


class InMemoryCircuitBreakerStore(CircuitBreakerStore):
    """
    Process-local store backed by one CircuitBreakerStateMachine per backend.

    Example:
        >>> store = InMemoryCircuitBreakerStore(CircuitPolicy(failure_threshold=3))
        >>> await store.allow("openai:gpt-4o")
        True
    """

    def __init__(
        self,
        policy: Optional[CircuitPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(policy)
        self._clock = clock
        self._breakers: dict[str, CircuitBreakerStateMachine] = {}

    def breaker(self, backend_id: str) -> CircuitBreakerStateMachine:
        """Get (or lazily create) the breaker for backend_id."""
        breaker = self._breakers.get(backend_id)
        if breaker is None:
            breaker = CircuitBreakerStateMachine.from_policy(
                backend_id, self._policy, clock=self._clock
            )
            self._breakers[backend_id] = breaker
        return breaker

    async def allow(self, backend_id: str) -> bool:
        return await self.breaker(backend_id).allow()

    async def record_success(self, backend_id: str) -> None:
        await self.breaker(backend_id).record_success()

    async def record_failure(self, backend_id: str) -> None:
        await self.breaker(backend_id).record_failure()

    async def release(self, backend_id: str) -> None:
        await self.breaker(backend_id).release()

    async def get_state(self, backend_id: str) -> CircuitBreakerState:
        return await self.breaker(backend_id).get_state()

    async def reset(self, backend_id: str) -> None:
        await self.breaker(backend_id).reset()

    async def status(self, backend_id: str) -> dict[str, Any]:
        return self.breaker(backend_id).status()

    def all_status(self) -> list[dict[str, Any]]:
        """Status of every breaker created so far."""
        return [b.status() for b in self._breakers.values()]


# =============================================================================
# WBS-R3.2.3: Redis Store
# =============================================================================


class RedisCircuitBreakerStore(CircuitBreakerStore):
    """
    Cross-process store keeping one Redis hash per backend.

    Every read-modify-write runs as WATCH key / HGETALL / MULTI / HSET / EXEC
    and retries on WatchError, so concurrent workers see atomic transitions.
    Timestamps use wall-clock time because they are compared across hosts.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.from_url("redis://localhost:6379")
        >>> store = RedisCircuitBreakerStore(client, CircuitPolicy())
        >>> await store.record_failure("openai:gpt-4o")
    """

    def __init__(
        self,
        redis_client: Redis,
        policy: Optional[CircuitPolicy] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(policy)
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._clock = clock

    def _make_key(self, backend_id: str) -> str:
        return f"{self._key_prefix}{backend_id}"

    async def _load(self, backend_id: str) -> CircuitSnapshot:
        data = await self._redis.hgetall(self._make_key(backend_id))
        return CircuitSnapshot.from_mapping(data)

    async def _transition(
        self,
        backend_id: str,
        rule: Callable[[CircuitSnapshot], Any],
    ) -> Any:
        """
        Apply rule to the stored snapshot atomically.

        Args:
            backend_id: Backend whose circuit is updated
            rule: Maps a snapshot to a new snapshot, or to (verdict, snapshot)

        Returns:
            The verdict when the rule returns one, else None

        Raises:
            RuntimeError: If the key kept changing under us
        """
        key = self._make_key(backend_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_TRANSACTION_RETRIES):
                try:
                    await pipe.watch(key)
                    before = CircuitSnapshot.from_mapping(await pipe.hgetall(key))

                    result = rule(before)
                    if isinstance(result, tuple):
                        verdict, after = result
                    else:
                        verdict, after = None, result

                    if after == before:
                        await pipe.unwatch()
                        return verdict

                    pipe.multi()
                    pipe.hset(key, mapping=after.to_mapping())
                    await pipe.execute()
                except WatchError:
                    logger.debug(
                        "Circuit update raced, retrying",
                        extra={"circuit": backend_id},
                    )
                    continue

                report_transition(backend_id, before, after)
                return verdict

        raise RuntimeError(
            f"Circuit update for {backend_id} did not settle after "
            f"{MAX_TRANSACTION_RETRIES} attempts"
        )

    async def _transition_or_fail_open(
        self,
        backend_id: str,
        operation: str,
        rule: Callable[[CircuitSnapshot], Any],
        fallback: Any = None,
    ) -> Any:
        """Run _transition, returning fallback when Redis is unavailable."""
        try:
            return await self._transition(backend_id, rule)
        except (RedisError, RuntimeError) as e:
            logger.warning(
                f"Circuit store unavailable during {operation}, failing open",
                extra={
                    "circuit": backend_id,
                    "operation": operation,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return fallback

    async def allow(self, backend_id: str) -> bool:
        now = self._clock()
        return await self._transition_or_fail_open(
            backend_id,
            "allow",
            lambda s: decide_allow(s, self._policy, now),
            fallback=True,
        )

    async def record_success(self, backend_id: str) -> None:
        await self._transition_or_fail_open(backend_id, "record_success", apply_success)

    async def record_failure(self, backend_id: str) -> None:
        now = self._clock()
        await self._transition_or_fail_open(
            backend_id,
            "record_failure",
            lambda s: apply_failure(s, self._policy, now),
        )

    async def release(self, backend_id: str) -> None:
        await self._transition_or_fail_open(backend_id, "release", apply_release)

    async def get_state(self, backend_id: str) -> CircuitBreakerState:
        return (await self._load(backend_id)).state

    async def reset(self, backend_id: str) -> None:
        await self._transition(backend_id, lambda s: CircuitSnapshot())

    async def status(self, backend_id: str) -> dict[str, Any]:
        snapshot = await self._load(backend_id)
        return {
            "name": backend_id,
            "state": snapshot.state.value,
            "failure_count": snapshot.failure_count,
            "failure_threshold": self._policy.failure_threshold,
            "reset_timeout_seconds": self._policy.reset_timeout_seconds,
            "window_seconds": self._policy.window_seconds,
            "trial_in_flight": snapshot.trial_in_flight,
        }


# =============================================================================
# Factory
# =============================================================================


def create_circuit_breaker_store(
    settings: Settings,
    redis_client: Optional[Redis] = None,
) -> CircuitBreakerStore:
    """
    Build the store selected by settings.circuit_breaker_backend.

    Raises:
        ValueError: If the Redis backend is selected without a client
    """
    policy = CircuitPolicy.from_settings(settings)
    if settings.circuit_breaker_backend == "redis":
        if redis_client is None:
            raise ValueError("circuit_breaker_backend=redis requires a Redis client")
        return RedisCircuitBreakerStore(redis_client, policy)
    return InMemoryCircuitBreakerStore(policy)
