"""
Error Classification - WBS-R3.5

Maps a raised backend error to exactly one OutcomeKind. This is the only
place that inspects error identities; the executor acts on the outcome.

Reference Documents:
- Release It! (Nygard): Distinguish transient from permanent failures
- GUIDELINES: Specific exceptions, always capture with 'as e'

Default classification:
    TIMEOUT       TimeoutError, httpx.TimeoutException, BackendTimeoutError
    RATE_LIMITED  RateLimitError, HTTP 429
    FATAL         ContentPolicyError, BudgetExceededError, RequestValidationError,
                  HTTP 400/422, programming errors (TypeError, ValueError, ...)
    RETRYABLE     transport errors, HTTP 5xx, anything else
"""

import asyncio
from typing import Callable, Iterable, Optional

import httpx

from llm_reliability.core.exceptions import (
    BackendTimeoutError,
    BudgetExceededError,
    ContentPolicyError,
    ProviderError,
    RateLimitError,
    RequestValidationError,
)
from llm_reliability.models.attempts import OutcomeKind

Classifier = Callable[[BaseException], OutcomeKind]

FATAL_STATUS_CODES = frozenset({400, 422})
RATE_LIMIT_STATUS_CODE = 429

TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    httpx.TimeoutException,
    BackendTimeoutError,
)

FATAL_ERRORS: tuple[type[BaseException], ...] = (
    ContentPolicyError,
    BudgetExceededError,
    RequestValidationError,
)

# Bugs in the caller's invoke code; another backend will not fix them.
PROGRAMMING_ERRORS: tuple[type[BaseException], ...] = (
    TypeError,
    ValueError,
    AttributeError,
    KeyError,
    NameError,
    NotImplementedError,
)


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, ProviderError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


class ErrorClassifier:
    """
    Default classifier, callable as classify(error) -> OutcomeKind.

    Extra error classes can be declared retryable or fatal; they are checked
    before the defaults, fatal first.

    Example:
        >>> classify = ErrorClassifier(extra_fatal=[MyQuotaError])
        >>> classify(RateLimitError("slow down", provider="openai"))
        <OutcomeKind.RATE_LIMITED: 'rate_limited'>
    """

    def __init__(
        self,
        extra_retryable: Iterable[type[BaseException]] = (),
        extra_fatal: Iterable[type[BaseException]] = (),
    ) -> None:
        self._extra_retryable = tuple(extra_retryable)
        self._extra_fatal = tuple(extra_fatal)

    def __call__(self, error: BaseException) -> OutcomeKind:
        if self._extra_fatal and isinstance(error, self._extra_fatal):
            return OutcomeKind.FATAL
        if self._extra_retryable and isinstance(error, self._extra_retryable):
            return OutcomeKind.RETRYABLE

        if isinstance(error, RateLimitError):
            return OutcomeKind.RATE_LIMITED
        if isinstance(error, TIMEOUT_ERRORS):
            return OutcomeKind.TIMEOUT
        if isinstance(error, FATAL_ERRORS):
            return OutcomeKind.FATAL

        status = _status_code(error)
        if status == RATE_LIMIT_STATUS_CODE:
            return OutcomeKind.RATE_LIMITED
        if status in FATAL_STATUS_CODES:
            return OutcomeKind.FATAL
        if status is not None:
            return OutcomeKind.RETRYABLE

        if isinstance(error, httpx.TransportError):
            return OutcomeKind.RETRYABLE
        if isinstance(error, PROGRAMMING_ERRORS):
            return OutcomeKind.FATAL

        return OutcomeKind.RETRYABLE


default_classifier = ErrorClassifier()
