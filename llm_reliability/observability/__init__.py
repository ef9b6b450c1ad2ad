"""
Observability Package - WBS-R6

This package provides observability infrastructure including:
- Structured JSON logging (WBS-R6.1)
- Prometheus metrics (WBS-R6.2)
- OpenTelemetry tracing (WBS-R6.3)
"""

from llm_reliability.observability.logging import (
    clear_correlation_id,
    configure_logging,
    correlation_id_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from llm_reliability.observability.metrics import (
    generate_metrics,
    record_attempt,
    record_circuit_skip,
    record_circuit_state_transition,
    record_emergency_finalization,
    record_execution,
    record_fallback,
    record_token_usage,
)
from llm_reliability.observability.tracing import (
    create_span,
    get_current_trace_id,
    get_tracer,
    inject_trace_context,
    setup_tracing,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "correlation_id_context",
    # Metrics
    "generate_metrics",
    "record_attempt",
    "record_circuit_skip",
    "record_circuit_state_transition",
    "record_emergency_finalization",
    "record_execution",
    "record_fallback",
    "record_token_usage",
    # Tracing
    "setup_tracing",
    "get_tracer",
    "get_current_trace_id",
    "inject_trace_context",
    "create_span",
]
