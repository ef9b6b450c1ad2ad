"""
Cost Tracker Service - WBS-R5.3

Prices attempts that did not report their own cost and aggregates per-backend
usage and spend in Redis.

Reference Documents:
- ARCHITECTURE.md: Service layer patterns
- GUIDELINES: Async patterns, dependency injection

Pattern: Repository pattern with Redis storage
Anti-Pattern §1.3 Avoided: Uses Pydantic models for data structures

Redis layout (hashes, atomic HINCRBY/HINCRBYFLOAT):
    usage:daily:<date>              totals of every attempt of the day
    usage:backend:<date>:<backend>  totals per backend id
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field
from redis.asyncio import Redis

from llm_reliability.models.attempts import AttemptTracker, Usage


# =============================================================================
# Custom Exceptions
# =============================================================================


class CostTrackerError(Exception):
    """Base exception for cost tracker errors."""

    pass


# =============================================================================
# UsageSummary Model
# =============================================================================


class UsageSummary(BaseModel):
    """
    Summary of token usage and costs.

    Attributes:
        input_tokens: Total input tokens used
        output_tokens: Total output tokens used
        cached_tokens: Total cached input tokens
        total_cost: Total cost in USD
        attempt_count: Number of attempts made
        failure_count: Number of attempts that failed
    """

    input_tokens: int = Field(default=0, description="Total input tokens")
    output_tokens: int = Field(default=0, description="Total output tokens")
    cached_tokens: int = Field(default=0, description="Total cached input tokens")
    total_cost: float = Field(default=0.0, description="Total cost in USD")
    attempt_count: int = Field(default=0, description="Number of attempts")
    failure_count: int = Field(default=0, description="Number of failed attempts")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_hash(cls, data: dict[Any, Any]) -> "UsageSummary":
        fields = {
            (k.decode() if isinstance(k, bytes) else k): v for k, v in data.items()
        }
        return cls(
            input_tokens=int(fields.get("input_tokens", 0)),
            output_tokens=int(fields.get("output_tokens", 0)),
            cached_tokens=int(fields.get("cached_tokens", 0)),
            total_cost=float(fields.get("total_cost", 0)),
            attempt_count=int(fields.get("attempt_count", 0)),
            failure_count=int(fields.get("failure_count", 0)),
        )


# =============================================================================
# Model Pricing Configuration
# Prices per 1M tokens (input/output)
# =============================================================================


DEFAULT_PRICING: dict[str, dict[str, Decimal]] = {
    # Claude models
    "claude-3-opus": {"input": Decimal("15.00"), "output": Decimal("75.00")},
    "claude-3-5-sonnet": {"input": Decimal("3.00"), "output": Decimal("15.00")},
    "claude-3-5-haiku": {"input": Decimal("0.80"), "output": Decimal("4.00")},
    "claude-3-haiku": {"input": Decimal("0.25"), "output": Decimal("1.25")},
    # GPT models
    "gpt-4o-mini": {"input": Decimal("0.15"), "output": Decimal("0.60")},
    "gpt-4o": {"input": Decimal("2.50"), "output": Decimal("10.00")},
    "gpt-4-turbo": {"input": Decimal("10.00"), "output": Decimal("30.00")},
    "gpt-4": {"input": Decimal("30.00"), "output": Decimal("60.00")},
    "gpt-3.5-turbo": {"input": Decimal("0.50"), "output": Decimal("1.50")},
    # Local models
    "llama": {"input": Decimal("0"), "output": Decimal("0")},
    "mistral": {"input": Decimal("0"), "output": Decimal("0")},
    # Default fallback
    "_default": {"input": Decimal("1.00"), "output": Decimal("2.00")},
}


def model_for_backend(backend_id: str) -> str:
    """
    Model name of a backend id.

    Backend ids are "<provider>:<model>" or a bare model name.
    """
    return backend_id.split(":", 1)[-1]


# =============================================================================
# CostTracker Service
# =============================================================================


class CostTracker:
    """
    Service for pricing attempts and tracking per-backend spend.

    Pricing works without Redis; the record/get methods need a client.

    Attributes:
        redis: Redis client for persistence (optional)
        pricing: Model pricing configuration
    """

    # Redis key prefixes
    DAILY_KEY_PREFIX = "usage:daily:"
    BACKEND_KEY_PREFIX = "usage:backend:"

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        pricing: Optional[dict[str, dict[str, Decimal]]] = None,
    ) -> None:
        """
        Initialize CostTracker.

        Args:
            redis_client: Redis client for persistence
            pricing: Optional custom pricing (defaults to DEFAULT_PRICING)
        """
        self._redis = redis_client
        self._pricing = pricing or DEFAULT_PRICING

    @property
    def pricing(self) -> dict[str, dict[str, Decimal]]:
        """Get pricing configuration."""
        return self._pricing

    def _get_model_pricing(self, model: str) -> dict[str, Decimal]:
        """
        Get pricing for a specific model.

        Args:
            model: Model name

        Returns:
            Pricing dict with input/output rates
        """
        # Try exact match first
        if model in self._pricing:
            return self._pricing[model]

        # Longest prefix wins ("gpt-4o-mini-2024" matches "gpt-4o-mini", not "gpt-4")
        prefixes = sorted(
            (p for p in self._pricing if p != "_default" and model.startswith(p)),
            key=len,
            reverse=True,
        )
        if prefixes:
            return self._pricing[prefixes[0]]

        # Fallback to default
        return self._pricing.get("_default", {"input": Decimal("1.00"), "output": Decimal("2.00")})

    def calculate_cost(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> float:
        """
        Calculate cost for token usage.

        Args:
            model: Model name
            input_tokens: Number of input tokens
            output_tokens: Number of output tokens

        Returns:
            Estimated cost in USD as float
        """
        pricing = self._get_model_pricing(model)
        # Prices are per 1M tokens
        input_cost = (Decimal(input_tokens) / Decimal("1000000")) * pricing["input"]
        output_cost = (Decimal(output_tokens) / Decimal("1000000")) * pricing["output"]
        return float(input_cost + output_cost)

    def price_usage(self, backend_id: str, usage: Usage) -> float:
        """Price one attempt's usage; used by the executor as its price hook."""
        return self.calculate_cost(
            model_for_backend(backend_id), usage.input_tokens, usage.output_tokens
        )

    def _get_daily_key(self, target_date: Optional[dt.date] = None) -> str:
        """Get Redis key for daily usage."""
        target = target_date or dt.date.today()
        return f"{self.DAILY_KEY_PREFIX}{target.isoformat()}"

    def _get_backend_key(self, backend_id: str, target_date: Optional[dt.date] = None) -> str:
        """Get Redis key for backend-specific usage."""
        target = target_date or dt.date.today()
        return f"{self.BACKEND_KEY_PREFIX}{target.isoformat()}:{backend_id}"

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise CostTrackerError("CostTracker has no Redis client")
        return self._redis

    async def record_attempts(self, tracker: AttemptTracker) -> UsageSummary:
        """
        Record every attempt of an execution.

        Uses atomic HINCRBY/HINCRBYFLOAT in one pipeline.

        Args:
            tracker: Tracker of a finished execution

        Returns:
            Updated usage summary for today
        """
        try:
            redis = self._require_redis()
            daily_key = self._get_daily_key()

            pipe = redis.pipeline()
            for attempt in tracker.attempts:
                failed = 0 if attempt.succeeded else 1
                for key in (daily_key, self._get_backend_key(attempt.backend_id)):
                    pipe.hincrby(key, "input_tokens", attempt.input_tokens)
                    pipe.hincrby(key, "output_tokens", attempt.output_tokens)
                    pipe.hincrby(key, "cached_tokens", attempt.cached_tokens)
                    pipe.hincrbyfloat(key, "total_cost", attempt.cost)
                    pipe.hincrby(key, "attempt_count", 1)
                    pipe.hincrby(key, "failure_count", failed)
            await pipe.execute()

            data = await redis.hgetall(daily_key)
            return UsageSummary.from_hash(data)

        except CostTrackerError:
            raise
        except Exception as e:
            raise CostTrackerError(f"Failed to record usage: {e}") from e

    async def get_daily_usage(
        self,
        date: Optional[dt.date] = None,
    ) -> UsageSummary:
        """
        Get usage summary for a specific day.

        Args:
            date: Date to get usage for (defaults to today)

        Returns:
            Usage summary for the day
        """
        try:
            data = await self._require_redis().hgetall(self._get_daily_key(date))
            if not data:
                return UsageSummary()
            return UsageSummary.from_hash(data)

        except CostTrackerError:
            raise
        except Exception as e:
            raise CostTrackerError(f"Failed to get daily usage: {e}") from e

    async def get_usage_by_backend(
        self,
        target_date: Optional[dt.date] = None,
    ) -> dict[str, UsageSummary]:
        """
        Get usage breakdown by backend for a specific day.

        Args:
            target_date: Date to get usage for (defaults to today)

        Returns:
            Dict mapping backend ids to usage summaries
        """
        try:
            redis = self._require_redis()
            target = target_date or dt.date.today()
            prefix = f"{self.BACKEND_KEY_PREFIX}{target.isoformat()}:"

            result: dict[str, UsageSummary] = {}

            cursor = 0
            while True:
                cursor, keys = await redis.scan(cursor, match=f"{prefix}*", count=100)
                for key in keys:
                    key_str = key.decode() if isinstance(key, bytes) else key
                    backend_id = key_str[len(prefix):]

                    data = await redis.hgetall(key)
                    if data:
                        result[backend_id] = UsageSummary.from_hash(data)

                if cursor == 0:
                    break

            return result

        except CostTrackerError:
            raise
        except Exception as e:
            raise CostTrackerError(f"Failed to get usage by backend: {e}") from e
