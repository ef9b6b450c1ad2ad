"""
Resilience Package - WBS-R3

This package provides the resilience patterns of the execution engine:
- Circuit breaker state machine and per-backend stores (WBS-R3.1, WBS-R3.2)
- Deadline budget (WBS-R3.3)
- Fallback planner (WBS-R3.4)
- Error classification (WBS-R3.5)
- Reliability executor (WBS-R3.6)

Reference Documents:
- GUIDELINES: Circuit breaker pattern, fallback chains
- Release It! (Nygard): Stability patterns
"""

from llm_reliability.resilience.circuit_breaker_state_machine import (
    CircuitBreakerState,
    CircuitBreakerStateMachine,
    CircuitPolicy,
    CircuitSnapshot,
)
from llm_reliability.resilience.circuit_breaker_store import (
    CircuitBreakerStore,
    InMemoryCircuitBreakerStore,
    RedisCircuitBreakerStore,
    create_circuit_breaker_store,
)
from llm_reliability.resilience.classification import (
    Classifier,
    ErrorClassifier,
    default_classifier,
)
from llm_reliability.resilience.deadline import DeadlineBudget
from llm_reliability.resilience.executor import (
    ExecutionResult,
    Invoke,
    ReliabilityExecutor,
)
from llm_reliability.resilience.fallback_planner import (
    FallbackPlanner,
    PlanResult,
    unique_candidates,
)

__all__ = [
    # Circuit breaker
    "CircuitBreakerState",
    "CircuitBreakerStateMachine",
    "CircuitPolicy",
    "CircuitSnapshot",
    "CircuitBreakerStore",
    "InMemoryCircuitBreakerStore",
    "RedisCircuitBreakerStore",
    "create_circuit_breaker_store",
    # Classification
    "Classifier",
    "ErrorClassifier",
    "default_classifier",
    # Deadline
    "DeadlineBudget",
    # Planner
    "FallbackPlanner",
    "PlanResult",
    "unique_candidates",
    # Executor
    "ExecutionResult",
    "Invoke",
    "ReliabilityExecutor",
]
