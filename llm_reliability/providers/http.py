"""
HTTP Completion Backend - WBS-R4.2 OpenAI-Compatible Adapter

Calls an OpenAI-compatible /chat/completions endpoint with httpx and maps
transport and HTTP failures onto the backend errors the classifier knows.

Reference Documents:
- GUIDELINES pp. 2309: HTTP Client with timeout
- OpenAI API: POST /chat/completions

The request timeout is the smaller of the adapter's own timeout and the
execution budget left, so a slow backend never outlives the deadline.
"""

import logging
from typing import Any, Optional

import httpx

from llm_reliability.core.exceptions import (
    BackendTimeoutError,
    ContentPolicyError,
    ProviderError,
    RateLimitError,
)
from llm_reliability.models.attempts import Usage
from llm_reliability.providers.base import (
    BackendResponse,
    CompletionBackend,
    CompletionRequest,
)
from llm_reliability.observability.tracing import inject_trace_context

logger = logging.getLogger(__name__)

CONTENT_POLICY_CODES = frozenset({"content_policy_violation", "content_filter"})


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("code")
    return None


class HTTPCompletionBackend(CompletionBackend):
    """
    Adapter for OpenAI-compatible chat completion APIs.

    Pattern: HTTP Client with timeout (GUIDELINES pp. 2309)

    Args:
        name: Provider name used in backend ids (e.g. "openai")
        base_url: API base URL (e.g. "https://api.openai.com/v1")
        api_key: Bearer token, if the endpoint needs one
        timeout: Upper bound per request in seconds
        client: Shared httpx.AsyncClient (one is created per call when omitted)

    Example:
        >>> backend = HTTPCompletionBackend("openai", "https://api.openai.com/v1", api_key="sk-...")
        >>> response = await backend.complete("gpt-4o", request, timeout=12.5)
    """

    DEFAULT_TIMEOUT = 60.0

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.name = name
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return inject_trace_context(headers)

    def _payload(self, model: str, request: CompletionRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": request.messages}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def complete(
        self,
        model: str,
        request: CompletionRequest,
        timeout: Optional[float] = None,
    ) -> BackendResponse:
        """
        POST the request and parse the completion.

        Raises:
            RateLimitError: HTTP 429
            ContentPolicyError: The endpoint refused the content
            BackendTimeoutError: The request timed out
            ProviderError: Any other HTTP or transport failure
        """
        effective_timeout = self._timeout if timeout is None else min(self._timeout, timeout)
        url = f"{self._base_url}/chat/completions"
        payload = self._payload(model, request)

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=self._headers(), timeout=effective_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=effective_timeout) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(
                f"Request to {self.name} timed out after {effective_timeout:.2f}s: {e}",
                provider=self.name,
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Failed to reach {self.name}: {e}", provider=self.name
            ) from e

        if response.status_code >= 400:
            self._raise_for_status(response)

        return self._parse(model, response.json())

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 429:
            raise RateLimitError(
                f"{self.name} rate limited the request",
                provider=self.name,
                retry_after=_retry_after(response),
            )
        if status == 400 and _error_code(response) in CONTENT_POLICY_CODES:
            raise ContentPolicyError(f"{self.name} refused the content", provider=self.name)

        logger.debug(
            f"{self.name} returned HTTP {status}",
            extra={"provider": self.name, "status_code": status},
        )
        raise ProviderError(
            f"{self.name} API error: HTTP {status}: {response.text[:200]}",
            provider=self.name,
            status_code=status,
        )

    def _parse(self, model: str, body: dict[str, Any]) -> BackendResponse:
        choices = body.get("choices") or [{}]
        message = choices[0].get("message") or {}
        usage = body.get("usage") or {}
        details = usage.get("prompt_tokens_details") or {}

        return BackendResponse(
            backend_id=f"{self.name}:{model}",
            content=message.get("content") or "",
            finish_reason=choices[0].get("finish_reason"),
            usage=Usage(
                input_tokens=usage.get("prompt_tokens") or 0,
                output_tokens=usage.get("completion_tokens") or 0,
                cached_tokens=details.get("cached_tokens") or 0,
            ),
            raw=body,
        )
