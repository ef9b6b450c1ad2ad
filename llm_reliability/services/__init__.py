"""
Services Package - WBS-R5

Execution instrumentation, tracking record storage, usage tracking and the
ReliabilityEngine facade.
"""

from llm_reliability.services.cost_tracker import (
    DEFAULT_PRICING,
    CostTracker,
    CostTrackerError,
    UsageSummary,
)
from llm_reliability.services.engine import ReliabilityEngine, create_redis_client
from llm_reliability.services.instrumentation import (
    CompletionStateMachine,
    ExecutionContext,
)
from llm_reliability.services.tracking_store import (
    InMemoryTrackingStore,
    RedisTrackingStore,
    TrackingRecordStore,
    create_tracking_store,
)

__all__ = [
    "DEFAULT_PRICING",
    "CostTracker",
    "CostTrackerError",
    "UsageSummary",
    "ReliabilityEngine",
    "create_redis_client",
    "CompletionStateMachine",
    "ExecutionContext",
    "TrackingRecordStore",
    "InMemoryTrackingStore",
    "RedisTrackingStore",
    "create_tracking_store",
]
