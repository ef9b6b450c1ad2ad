"""
Providers Package - WBS-R4

Backend adapters reachable through the executor's invoke capability.
"""

from llm_reliability.providers.base import (
    BackendRegistry,
    BackendResponse,
    CompletionBackend,
    CompletionRequest,
    split_backend_id,
)
from llm_reliability.providers.fake import FakeBackend
from llm_reliability.providers.http import HTTPCompletionBackend

__all__ = [
    "BackendRegistry",
    "BackendResponse",
    "CompletionBackend",
    "CompletionRequest",
    "split_backend_id",
    "FakeBackend",
    "HTTPCompletionBackend",
]
