"""
OpenTelemetry Tracing Module - WBS-R6.3

This module provides distributed tracing via OpenTelemetry.

Each execution runs inside a "reliability.execution" span and each backend
attempt inside a child "reliability.attempt" span, so a fallback chain shows
up as a sequence of sibling attempt spans. The HTTP backend adapter injects
the active trace context into outbound request headers.

Pattern: Distributed tracing for observability
"""

from contextlib import contextmanager
from typing import Any, Generator, Optional

from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.trace import Span, Tracer

TRACER_NAME = "llm_reliability"

_tracer_provider: Optional[TracerProvider] = None


# =============================================================================
# TracerProvider Configuration
# =============================================================================


def setup_tracing(
    service_name: str = "llm-reliability",
    exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """
    Configure the global OpenTelemetry TracerProvider.

    Args:
        service_name: Name of the service for resource identification
        exporter: Span exporter (default: ConsoleSpanExporter)

    Returns:
        Configured TracerProvider
    """
    global _tracer_provider

    resource = Resource.create({SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter or ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer_provider = provider

    return provider


def get_tracer(name: str = TRACER_NAME) -> Tracer:
    """
    Get a named tracer instance.

    Args:
        name: Name for the tracer

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    """
    Get the current trace ID as hex string.

    Returns:
        32-character hex string or None if no active span
    """
    span_context = trace.get_current_span().get_span_context()

    if span_context.trace_id == 0:
        return None

    return format(span_context.trace_id, "032x")


def inject_trace_context(headers: Optional[dict[str, str]] = None) -> dict[str, str]:
    """
    Inject trace context into headers for outbound backend requests.

    Args:
        headers: Existing headers dict to inject into (optional)

    Returns:
        Headers dict with trace context injected
    """
    carrier = headers if headers is not None else {}
    inject(carrier)
    return carrier


# =============================================================================
# Span Creation Helpers
# =============================================================================


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict[str, Any]] = None,
) -> Generator[Span, None, None]:
    """
    Context manager for creating a span.

    Exceptions are recorded by the SDK when they escape the block.

    Args:
        name: Span name
        attributes: Optional span attributes (None values are dropped)

    Yields:
        Active span
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span
