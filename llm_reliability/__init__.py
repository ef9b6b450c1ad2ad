"""
LLM Reliability - execution engine for calls to unreliable inference backends.

Runs one logical request against an ordered list of candidate backends with
per-backend circuit breaking, a shared deadline, and a persisted tracking
record that always reaches a terminal status.
"""

from llm_reliability.core.exceptions import (
    AllBackendsFailedError,
    ReliabilityError,
    TotalTimeoutExceededError,
)
from llm_reliability.models.attempts import AttemptRecord, AttemptTracker, OutcomeKind
from llm_reliability.models.execution import ExecutionOutcome
from llm_reliability.services.engine import ReliabilityEngine

__version__ = "0.1.0"

__all__ = [
    "AllBackendsFailedError",
    "AttemptRecord",
    "AttemptTracker",
    "ExecutionOutcome",
    "OutcomeKind",
    "ReliabilityEngine",
    "ReliabilityError",
    "TotalTimeoutExceededError",
    "__version__",
]
