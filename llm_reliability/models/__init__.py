"""
Models Package - WBS-R2

Domain models for attempts, tracking records and execution outcomes.
"""

from llm_reliability.models.attempts import (
    AttemptRecord,
    AttemptTracker,
    OutcomeKind,
    Usage,
)
from llm_reliability.models.execution import (
    ExecutionOutcome,
    ExecutionStatus,
    ExecutionTrackingRecord,
    tracker_fields,
)

__all__ = [
    "OutcomeKind",
    "Usage",
    "AttemptRecord",
    "AttemptTracker",
    "ExecutionStatus",
    "ExecutionTrackingRecord",
    "ExecutionOutcome",
    "tracker_fields",
]
