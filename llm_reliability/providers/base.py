"""
Backend Interface - WBS-R4.1 Abstract Completion Backend

Defines the port through which the engine reaches remote inference backends,
and the registry that turns a request into the executor's invoke capability.

Reference Documents:
- GUIDELINES pp. 793-795: Repository pattern and ABC patterns
- GUIDELINES p. 953: @abstractmethod decorator usage

Design Pattern:
- Ports and Adapters (Hexagonal Architecture)
- CompletionBackend serves as the "port" (interface)
- HTTPCompletionBackend and FakeBackend serve as "adapters"

Backend identifiers have the form "<provider>:<model>", e.g. "openai:gpt-4o".
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field

from llm_reliability.models.attempts import Usage
from llm_reliability.resilience.executor import Invoke


def split_backend_id(backend_id: str) -> tuple[str, str]:
    """
    Split "<provider>:<model>" into its parts.

    Raises:
        ValueError: If the id has no provider prefix
    """
    provider, sep, model = backend_id.partition(":")
    if not sep or not provider or not model:
        raise ValueError(f"Backend id must look like '<provider>:<model>': {backend_id!r}")
    return provider, model


# =============================================================================
# Request / Response Models
# =============================================================================


class CompletionRequest(BaseModel):
    """
    Provider-neutral chat completion request.

    Attributes:
        messages: Chat messages ({"role": ..., "content": ...})
        temperature: Sampling temperature
        max_tokens: Completion token limit
    """

    messages: list[dict[str, Any]]
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class BackendResponse(BaseModel):
    """
    Response of one backend call.

    The executor reads `usage` and `cost` from it for attempt bookkeeping.
    """

    backend_id: str
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    cost: Optional[float] = None
    raw: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Backend Port
# =============================================================================


class CompletionBackend(ABC):
    """
    Abstract base class for backend adapters.

    Implementations must finish or raise within `timeout` seconds when it is
    given; the executor also cancels them at the deadline.
    """

    @abstractmethod
    async def complete(
        self,
        model: str,
        request: CompletionRequest,
        timeout: Optional[float] = None,
    ) -> BackendResponse:
        """
        Run one completion against this backend.

        Args:
            model: Model name (the part after the provider prefix)
            request: The completion request
            timeout: Seconds left in the execution budget (None = unbounded)

        Returns:
            BackendResponse with content and usage
        """
        ...


class BackendRegistry:
    """
    Maps provider names to backend adapters.

    Example:
        >>> registry = BackendRegistry()
        >>> registry.register("openai", HTTPCompletionBackend("openai", "https://api.openai.com/v1"))
        >>> invoke = registry.invoker(CompletionRequest(messages=[...]))
        >>> outcome = await engine.run(["openai:gpt-4o"], invoke)
    """

    def __init__(self) -> None:
        self._backends: dict[str, CompletionBackend] = {}

    def register(self, provider: str, backend: CompletionBackend) -> None:
        self._backends[provider] = backend

    def get(self, provider: str) -> CompletionBackend:
        backend = self._backends.get(provider)
        if backend is None:
            raise KeyError(f"No backend registered for provider '{provider}'")
        return backend

    @property
    def providers(self) -> list[str]:
        return list(self._backends)

    def invoker(self, request: CompletionRequest) -> Invoke:
        """Bind a request into an invoke(backend_id, remaining_seconds) capability."""

        async def invoke(backend_id: str, remaining: Optional[float]) -> BackendResponse:
            provider, model = split_backend_id(backend_id)
            return await self.get(provider).complete(model, request, timeout=remaining)

        return invoke
