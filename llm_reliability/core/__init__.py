"""
Core module for LLM Reliability.

This module contains configuration and the exception hierarchy.

WBS-R1: Core Configuration Module
- R1.1: Settings Class Implementation
- R1.2: Settings Singleton
- R1.3: Custom Exceptions
"""

from llm_reliability.core.config import Settings, get_settings
from llm_reliability.core.exceptions import (
    AllBackendsFailedError,
    BackendTimeoutError,
    BudgetExceededError,
    ContentPolicyError,
    ErrorCode,
    IncompleteExecutionError,
    LLMReliabilityException,
    ProviderError,
    RateLimitError,
    ReliabilityError,
    RequestValidationError,
    TotalTimeoutExceededError,
    TrackingStoreError,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Exceptions
    "ErrorCode",
    "LLMReliabilityException",
    "ProviderError",
    "RateLimitError",
    "BackendTimeoutError",
    "ContentPolicyError",
    "BudgetExceededError",
    "RequestValidationError",
    "ReliabilityError",
    "AllBackendsFailedError",
    "TotalTimeoutExceededError",
    "IncompleteExecutionError",
    "TrackingStoreError",
]
