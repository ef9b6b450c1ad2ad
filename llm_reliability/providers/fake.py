"""
Fake Backend - Test Double Implementation

This module provides a FakeBackend that implements the real CompletionBackend
interface without making network calls.

Pattern: Test Doubles using duck typing (GUIDELINES pp. 157)
"Python's duck typing enables test doubles without complex mocking frameworks"

This is NOT mocking - it's a proper implementation of the interface for testing.
The FakeBackend can also be used for:
- Local development without API keys
- Rehearsing fallback and circuit behaviour in demo environments

Reference:
- GUIDELINES pp. 157: FakeRepository pattern
"""

import asyncio
from collections import deque
from typing import Iterable, Optional, Union

from llm_reliability.models.attempts import Usage
from llm_reliability.providers.base import (
    BackendResponse,
    CompletionBackend,
    CompletionRequest,
)

ScriptStep = Union[BackendResponse, BaseException]


class FakeBackend(CompletionBackend):
    """
    Fake backend for testing and local development.

    Each call consumes the next scripted step: a BackendResponse is returned,
    an exception is raised. When the script is empty the backend answers with
    response_content, or raises error_on_complete if one is set.

    Attributes:
        name: Provider name used in backend ids
        response_content: Default content to return
        error_on_complete: Exception to raise when the script is empty
        delay_seconds: Simulated latency of every call
        calls: (model, timeout) of every call, for test assertions

    Example:
        >>> backend = FakeBackend("openai", script=[RateLimitError("slow down", provider="openai")])
        >>> await backend.complete("gpt-4o", request)  # Raises RateLimitError
        >>> await backend.complete("gpt-4o", request)  # Returns the default response
    """

    def __init__(
        self,
        name: str = "fake",
        response_content: str = "Fake response for testing",
        error_on_complete: Optional[BaseException] = None,
        script: Optional[Iterable[ScriptStep]] = None,
        delay_seconds: float = 0.0,
        usage: Optional[Usage] = None,
    ) -> None:
        """
        Initialize the fake backend.

        Args:
            name: Provider name (default: "fake")
            response_content: Content of the default response
            error_on_complete: Exception to raise when the script is empty
            script: Ordered responses/exceptions consumed one per call
            delay_seconds: Sleep before answering (cancellable)
            usage: Usage reported by the default response
        """
        self.name = name
        self.response_content = response_content
        self.error_on_complete = error_on_complete
        self.delay_seconds = delay_seconds
        self.usage = usage or Usage(input_tokens=10, output_tokens=5)
        self._script: deque[ScriptStep] = deque(script or [])

        # Track calls for test assertions
        self.calls: list[tuple[str, Optional[float]]] = []
        self.cancelled = 0

    def push(self, *steps: ScriptStep) -> None:
        """Append steps to the script."""
        self._script.extend(steps)

    async def complete(
        self,
        model: str,
        request: CompletionRequest,
        timeout: Optional[float] = None,
    ) -> BackendResponse:
        """
        Produce the next scripted result.

        Raises:
            BaseException: The next scripted exception, or error_on_complete
        """
        self.calls.append((model, timeout))

        if self.delay_seconds:
            try:
                await asyncio.sleep(self.delay_seconds)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise

        if self._script:
            step = self._script.popleft()
            if isinstance(step, BaseException):
                raise step
            return step

        if self.error_on_complete is not None:
            raise self.error_on_complete

        return BackendResponse(
            backend_id=f"{self.name}:{model}",
            content=self.response_content,
            finish_reason="stop",
            usage=self.usage,
        )
