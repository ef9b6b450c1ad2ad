"""
Reliability Metrics - WBS-R6.2

This module provides Prometheus metrics for the circuit breaker, the fallback
loop and execution finalization.

Reference Documents:
- GUIDELINES pp. 2309-2319: Prometheus for metrics collection
- Newman (Building Microservices pp. 273-275): "response times and error rates"

Metrics Provided:
- Circuit breaker state transitions (counter) and current state (gauge)
- Backend attempts by outcome (counter)
- Fallbacks taken (counter)
- Executions by terminal status (counter) and duration (histogram)
- Emergency finalizations (counter)
- Token usage and cost (counters)

Anti-Pattern Compliance:
- AP-1: Metric names as constants
"""

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# Constants (AP-1 Compliance: No duplicated string literals)
# =============================================================================

METRIC_CIRCUIT_TRANSITIONS = "llm_reliability_circuit_breaker_state_transitions_total"
METRIC_CIRCUIT_STATE = "llm_reliability_circuit_breaker_state"
METRIC_ATTEMPTS = "llm_reliability_attempts_total"
METRIC_FALLBACKS = "llm_reliability_fallbacks_total"
METRIC_CIRCUIT_SKIPS = "llm_reliability_circuit_skips_total"
METRIC_EXECUTIONS = "llm_reliability_executions_total"
METRIC_EXECUTION_DURATION = "llm_reliability_execution_duration_seconds"
METRIC_EMERGENCY_FINALIZATIONS = "llm_reliability_emergency_finalizations_total"
METRIC_TOKENS = "llm_reliability_tokens_total"
METRIC_COST = "llm_reliability_cost_dollars_total"


# =============================================================================
# Circuit Breaker Metrics
# =============================================================================

CIRCUIT_STATE_TRANSITIONS = Counter(
    name=METRIC_CIRCUIT_TRANSITIONS,
    documentation="Total number of circuit breaker state transitions",
    labelnames=["circuit_name", "to_state", "from_state"],
)

CIRCUIT_STATE_GAUGE = Gauge(
    name=METRIC_CIRCUIT_STATE,
    documentation="Current state of circuit breaker (0=closed, 1=half_open, 2=open)",
    labelnames=["circuit_name"],
)

_STATE_TO_NUMERIC = {
    "closed": 0,
    "half_open": 1,
    "open": 2,
}


def record_circuit_state_transition(
    circuit_name: str,
    to_state: str,
    from_state: str,
) -> None:
    """
    Record a circuit breaker state transition.

    Args:
        circuit_name: Name of the circuit breaker (the backend identifier)
        to_state: State transitioning to (closed, open, half_open)
        from_state: State transitioning from (closed, open, half_open)
    """
    CIRCUIT_STATE_TRANSITIONS.labels(
        circuit_name=circuit_name,
        to_state=to_state,
        from_state=from_state,
    ).inc()

    CIRCUIT_STATE_GAUGE.labels(circuit_name=circuit_name).set(
        _STATE_TO_NUMERIC.get(to_state, 0)
    )


# =============================================================================
# Attempt / Fallback Metrics
# =============================================================================

ATTEMPTS = Counter(
    name=METRIC_ATTEMPTS,
    documentation="Total number of backend attempts by outcome",
    labelnames=["backend", "outcome"],
)

FALLBACKS = Counter(
    name=METRIC_FALLBACKS,
    documentation="Executions answered by a backend other than the primary",
    labelnames=["primary", "chosen"],
)

CIRCUIT_SKIPS = Counter(
    name=METRIC_CIRCUIT_SKIPS,
    documentation="Candidates skipped at planning time because the circuit denied them",
    labelnames=["backend"],
)


def record_attempt(backend: str, outcome: str) -> None:
    """
    Record one finished backend attempt.

    Args:
        backend: Backend identifier
        outcome: OutcomeKind value (success, retryable, rate_limited, timeout, fatal)
    """
    ATTEMPTS.labels(backend=backend, outcome=outcome).inc()


def record_fallback(primary: str, chosen: str) -> None:
    """Record that an execution succeeded on a fallback backend."""
    FALLBACKS.labels(primary=primary, chosen=chosen).inc()


def record_circuit_skip(backend: str) -> None:
    """Record a planning-time skip caused by an open circuit."""
    CIRCUIT_SKIPS.labels(backend=backend).inc()


# =============================================================================
# Execution Metrics
# =============================================================================

EXECUTIONS = Counter(
    name=METRIC_EXECUTIONS,
    documentation="Total number of finalized executions by terminal status",
    labelnames=["status"],
)

EXECUTION_DURATION = Histogram(
    name=METRIC_EXECUTION_DURATION,
    documentation="Wall-clock duration of executions across all attempts",
    labelnames=["status"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

EMERGENCY_FINALIZATIONS = Counter(
    name=METRIC_EMERGENCY_FINALIZATIONS,
    documentation="Tracking records force-finalized by the emergency path",
    labelnames=["applied"],
)

TOKENS = Counter(
    name=METRIC_TOKENS,
    documentation="Tokens consumed across all attempts",
    labelnames=["backend", "type"],
)

COST = Counter(
    name=METRIC_COST,
    documentation="Estimated spend across all attempts in USD",
    labelnames=["backend"],
)


def record_execution(status: str, duration_seconds: float) -> None:
    """
    Record a finalized execution.

    Args:
        status: Terminal status (success, error, timeout)
        duration_seconds: Execution duration in seconds
    """
    EXECUTIONS.labels(status=status).inc()
    EXECUTION_DURATION.labels(status=status).observe(duration_seconds)


def record_emergency_finalization(applied: bool) -> None:
    """Record an emergency finalize and whether the conditional write applied."""
    EMERGENCY_FINALIZATIONS.labels(applied=str(applied).lower()).inc()


def record_token_usage(
    backend: str,
    input_tokens: int,
    output_tokens: int,
    cost: float,
) -> None:
    """
    Record token usage and cost of one attempt.

    Args:
        backend: Backend identifier
        input_tokens: Prompt tokens consumed
        output_tokens: Completion tokens produced
        cost: Estimated cost in USD
    """
    if input_tokens:
        TOKENS.labels(backend=backend, type="input").inc(input_tokens)
    if output_tokens:
        TOKENS.labels(backend=backend, type="output").inc(output_tokens)
    if cost:
        COST.labels(backend=backend).inc(cost)


def generate_metrics() -> str:
    """
    Generate metrics in Prometheus text format.

    Returns:
        Metrics as a Prometheus exposition string
    """
    return generate_latest(REGISTRY).decode("utf-8")
