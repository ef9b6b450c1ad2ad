"""
Circuit Breaker State Machine - WBS-R3.1

This module implements the per-backend circuit breaker state machine.

Reference Documents:
- Building Reactive Microservices in Java (Escoffier) Ch.6, pp.54-62
- Release It! (Nygard): Stability patterns

State Machine:
    CLOSED: Normal operation, all requests pass through
    OPEN: Circuit tripped, requests are denied until the cool-down elapses
    HALF_OPEN: Recovery testing, exactly one trial request in flight

Transitions:
    CLOSED    -> OPEN       consecutive failures reach the threshold
    OPEN      -> HALF_OPEN  cool-down elapsed, on the next allow() call
    HALF_OPEN -> CLOSED     the trial succeeds
    HALF_OPEN -> OPEN       the trial fails (opened_at is reset)

The transition rules are pure functions over a CircuitSnapshot so the same
rules run in process memory (under an asyncio.Lock) and in Redis (inside a
WATCH/MULTI transaction), see circuit_breaker_store.py.

Anti-Pattern Compliance:
- AP-6: State protected by asyncio.Lock() for thread safety
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

from llm_reliability.core.config import Settings
from llm_reliability.observability.metrics import record_circuit_state_transition

logger = logging.getLogger(__name__)


# =============================================================================
# Constants (AP-1 Compliance: No duplicated string literals)
# =============================================================================

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_SECONDS = 30.0
DEFAULT_WINDOW_SECONDS = 60.0


# =============================================================================
# State Enum
# =============================================================================


class CircuitBreakerState(Enum):
    """
    State of a circuit breaker.

    Per *Building Reactive Microservices in Java*:
    "A circuit breaker is a three-state automaton that manages an interaction.
    It starts in a closed state, switches to open after N failures,
    and goes to half-open after cooldown to probe recovery."
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# =============================================================================
# Policy and Snapshot
# =============================================================================


@dataclass(frozen=True)
class CircuitPolicy:
    """
    Thresholds shared by every breaker of a store.

    Attributes:
        failure_threshold: Consecutive failures before opening
        reset_timeout_seconds: Cool-down before a half-open trial is allowed
        window_seconds: A failure older than this no longer counts toward
            the consecutive streak (None keeps the streak forever)
    """

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    reset_timeout_seconds: float = DEFAULT_RESET_TIMEOUT_SECONDS
    window_seconds: Optional[float] = DEFAULT_WINDOW_SECONDS

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout_seconds <= 0:
            raise ValueError("reset_timeout_seconds must be > 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitPolicy":
        return cls(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            reset_timeout_seconds=settings.circuit_breaker_recovery_timeout_seconds,
            window_seconds=settings.circuit_breaker_window_seconds,
        )


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time state of one backend's circuit."""

    state: CircuitBreakerState = CircuitBreakerState.CLOSED
    failure_count: int = 0
    opened_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    trial_in_flight: bool = False

    def to_mapping(self) -> dict[str, str]:
        """Flatten for storage in a Redis hash."""
        return {
            "state": self.state.value,
            "failure_count": str(self.failure_count),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "last_failure_at": (
                "" if self.last_failure_at is None else repr(self.last_failure_at)
            ),
            "trial_in_flight": "1" if self.trial_in_flight else "0",
        }

    @classmethod
    def from_mapping(cls, data: dict[Any, Any]) -> "CircuitSnapshot":
        """Inverse of to_mapping(); an empty mapping is a fresh closed circuit."""
        if not data:
            return cls()
        fields = {
            (k.decode() if isinstance(k, bytes) else k): (
                v.decode() if isinstance(v, bytes) else v
            )
            for k, v in data.items()
        }
        return cls(
            state=CircuitBreakerState(fields.get("state", "closed")),
            failure_count=int(fields.get("failure_count") or 0),
            opened_at=float(fields["opened_at"]) if fields.get("opened_at") else None,
            last_failure_at=(
                float(fields["last_failure_at"]) if fields.get("last_failure_at") else None
            ),
            trial_in_flight=fields.get("trial_in_flight") == "1",
        )


# =============================================================================
# Transition Rules
# =============================================================================


def decide_allow(
    snapshot: CircuitSnapshot, policy: CircuitPolicy, now: float
) -> tuple[bool, CircuitSnapshot]:
    """
    Decide whether a call may proceed and return the resulting snapshot.

    OPEN -> HALF_OPEN happens here, claiming the single trial slot.
    """
    if snapshot.state is CircuitBreakerState.CLOSED:
        return True, snapshot

    if snapshot.state is CircuitBreakerState.OPEN:
        opened_at = snapshot.opened_at if snapshot.opened_at is not None else now
        if now - opened_at >= policy.reset_timeout_seconds:
            return True, replace(
                snapshot, state=CircuitBreakerState.HALF_OPEN, trial_in_flight=True
            )
        return False, snapshot

    # HALF_OPEN
    if snapshot.trial_in_flight:
        return False, snapshot
    return True, replace(snapshot, trial_in_flight=True)


def apply_success(snapshot: CircuitSnapshot) -> CircuitSnapshot:
    """Reset the streak; a successful half-open trial closes the circuit."""
    state = snapshot.state
    if state is CircuitBreakerState.HALF_OPEN:
        state = CircuitBreakerState.CLOSED
    return replace(
        snapshot,
        state=state,
        failure_count=0,
        last_failure_at=None,
        opened_at=None if state is CircuitBreakerState.CLOSED else snapshot.opened_at,
        trial_in_flight=False,
    )


def apply_failure(
    snapshot: CircuitSnapshot, policy: CircuitPolicy, now: float
) -> CircuitSnapshot:
    """Extend the streak; open at threshold or on a failed half-open trial."""
    if snapshot.state is CircuitBreakerState.HALF_OPEN:
        return replace(
            snapshot,
            state=CircuitBreakerState.OPEN,
            failure_count=snapshot.failure_count + 1,
            opened_at=now,
            last_failure_at=now,
            trial_in_flight=False,
        )

    count = snapshot.failure_count
    if (
        policy.window_seconds is not None
        and snapshot.last_failure_at is not None
        and now - snapshot.last_failure_at > policy.window_seconds
    ):
        count = 0
    count += 1

    if (
        snapshot.state is CircuitBreakerState.CLOSED
        and count >= policy.failure_threshold
    ):
        return replace(
            snapshot,
            state=CircuitBreakerState.OPEN,
            failure_count=count,
            opened_at=now,
            last_failure_at=now,
        )

    return replace(snapshot, failure_count=count, last_failure_at=now)


def apply_release(snapshot: CircuitSnapshot) -> CircuitSnapshot:
    """Drop an in-flight half-open trial without a verdict."""
    if not snapshot.trial_in_flight:
        return snapshot
    return replace(snapshot, trial_in_flight=False)


def report_transition(name: str, before: CircuitSnapshot, after: CircuitSnapshot) -> None:
    """Emit metrics and logs when a transition changed the state."""
    if before.state is after.state:
        return

    record_circuit_state_transition(name, after.state.value, before.state.value)

    if after.state is CircuitBreakerState.OPEN:
        logger.warning(
            f"Circuit opened for {name}",
            extra={
                "circuit": name,
                "from_state": before.state.value,
                "failure_count": after.failure_count,
            },
        )
    else:
        logger.info(
            f"Circuit {before.state.value} -> {after.state.value} for {name}",
            extra={"circuit": name},
        )


# =============================================================================
# Circuit Breaker State Machine
# =============================================================================


class CircuitBreakerStateMachine:
    """
    In-memory circuit breaker for a single backend.

    Thread Safety (AP-6):
        All state reads that may transition and all mutations are protected
        by asyncio.Lock() so concurrent executions see atomic transitions.

    Example:
        >>> sm = CircuitBreakerStateMachine(name="openai:gpt-4o")
        >>> if await sm.allow():
        ...     ...

    Attributes:
        name: Identifier for this circuit breaker (the backend identifier)
        policy: Threshold, cool-down and window
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_seconds: float = DEFAULT_RESET_TIMEOUT_SECONDS,
        window_seconds: Optional[float] = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize CircuitBreakerStateMachine.

        Args:
            name: Name for identification and metrics
            failure_threshold: Number of consecutive failures before opening
            reset_timeout_seconds: Seconds to wait before a half-open trial
            window_seconds: Rolling window for the failure streak
            clock: Monotonic time source (injectable for tests)
        """
        self._name = name
        self._policy = CircuitPolicy(
            failure_threshold=failure_threshold,
            reset_timeout_seconds=reset_timeout_seconds,
            window_seconds=window_seconds,
        )
        self._clock = clock
        self._snapshot = CircuitSnapshot()

        # AP-6 Compliance: Thread-safe state transitions
        self._lock = asyncio.Lock()

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def from_policy(
        cls,
        name: str,
        policy: CircuitPolicy,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CircuitBreakerStateMachine":
        return cls(
            name=name,
            failure_threshold=policy.failure_threshold,
            reset_timeout_seconds=policy.reset_timeout_seconds,
            window_seconds=policy.window_seconds,
            clock=clock,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def name(self) -> str:
        """Name of this circuit breaker."""
        return self._name

    @property
    def policy(self) -> CircuitPolicy:
        return self._policy

    @property
    def failure_threshold(self) -> int:
        """Number of failures required to open the circuit."""
        return self._policy.failure_threshold

    @property
    def reset_timeout_seconds(self) -> float:
        """Seconds to wait before attempting recovery."""
        return self._policy.reset_timeout_seconds

    @property
    def state(self) -> CircuitBreakerState:
        """
        Stored state of the circuit breaker.

        Note: OPEN -> HALF_OPEN only happens inside allow().
        """
        return self._snapshot.state

    @property
    def failure_count(self) -> int:
        """Current consecutive failure count."""
        return self._snapshot.failure_count

    @property
    def snapshot(self) -> CircuitSnapshot:
        return self._snapshot

    # =========================================================================
    # State Management (Thread-Safe)
    # =========================================================================

    async def _transition(self, rule: Callable[[CircuitSnapshot], Any]) -> Any:
        async with self._lock:
            before = self._snapshot
            result = rule(before)
            if isinstance(result, tuple):
                verdict, after = result
            else:
                verdict, after = None, result
            self._snapshot = after
        report_transition(self._name, before, after)
        return verdict

    async def allow(self) -> bool:
        """
        Whether a call against this backend may start now.

        Returns False while open and cooling down, or while a half-open trial
        is already in flight. Never raises.
        """
        now = self._clock()
        return await self._transition(lambda s: decide_allow(s, self._policy, now))

    async def get_state(self) -> CircuitBreakerState:
        """Current stored state, read under the lock."""
        async with self._lock:
            return self._snapshot.state

    async def record_failure(self) -> None:
        """Record a failed call."""
        now = self._clock()
        await self._transition(lambda s: apply_failure(s, self._policy, now))

    async def record_success(self) -> None:
        """Record a successful call."""
        await self._transition(apply_success)

    async def release(self) -> None:
        """Free the half-open trial slot without judging the backend."""
        await self._transition(apply_release)

    async def reset(self) -> None:
        """Manually close the circuit and clear the failure streak."""
        await self._transition(lambda s: CircuitSnapshot())

    def status(self) -> dict[str, Any]:
        """Diagnostic view of this breaker."""
        return {
            "name": self._name,
            "state": self._snapshot.state.value,
            "failure_count": self._snapshot.failure_count,
            "failure_threshold": self._policy.failure_threshold,
            "reset_timeout_seconds": self._policy.reset_timeout_seconds,
            "window_seconds": self._policy.window_seconds,
            "trial_in_flight": self._snapshot.trial_in_flight,
        }
