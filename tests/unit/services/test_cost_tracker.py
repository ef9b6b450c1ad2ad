"""
Tests for CostTracker - WBS-R5.3 Cost Tracker Service

Reference Documents:
- GUIDELINES pp. 2153: Redis for external state stores

WBS Items Covered:
- WBS-R5.3.1: Pricing per model (per 1M tokens), longest-prefix match
- WBS-R5.3.2: price_usage() hook used by the executor
- WBS-R5.3.3: record_attempts() daily and per-backend aggregation
- WBS-R5.3.4: get_daily_usage() / get_usage_by_backend()
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def cost_tracker(fake_redis):
    """Create CostTracker with fake Redis."""
    from llm_reliability.services.cost_tracker import CostTracker

    return CostTracker(redis_client=fake_redis)


@pytest.fixture
def tracker():
    """A finished execution: one rate-limited attempt, one success."""
    from llm_reliability.models.attempts import AttemptTracker, OutcomeKind, Usage

    now = datetime.now(timezone.utc)
    tracker = AttemptTracker(["openai:gpt-4o", "ollama:llama3"])
    tracker.record_attempt(
        "openai:gpt-4o", now, now, 40, OutcomeKind.RATE_LIMITED,
        usage=Usage(input_tokens=100), cost=0.00025,
    )
    tracker.record_attempt(
        "ollama:llama3", now, now, 300, OutcomeKind.SUCCESS,
        usage=Usage(input_tokens=100, output_tokens=50, cached_tokens=20),
    )
    return tracker


# =============================================================================
# WBS-R5.3.1: Pricing
# =============================================================================


class TestPricing:
    """Cost calculation from token counts."""

    def test_calculate_cost_known_model(self) -> None:
        """gpt-4o costs 2.50 / 10.00 USD per 1M tokens."""
        from llm_reliability.services.cost_tracker import CostTracker

        cost = CostTracker().calculate_cost("gpt-4o", 1_000_000, 100_000)

        assert cost == pytest.approx(3.50)

    def test_longest_prefix_wins(self) -> None:
        """A dated model id is priced by its most specific prefix."""
        from llm_reliability.services.cost_tracker import CostTracker

        tracker = CostTracker()

        assert tracker.calculate_cost("gpt-4o-mini-2024-07-18", 1_000_000, 0) == pytest.approx(0.15)
        assert tracker.calculate_cost("gpt-4-0613", 1_000_000, 0) == pytest.approx(30.0)

    def test_unknown_model_uses_default(self) -> None:
        """Unknown models fall back to _default pricing."""
        from llm_reliability.services.cost_tracker import CostTracker

        assert CostTracker().calculate_cost("mystery", 1_000_000, 1_000_000) == pytest.approx(3.0)

    def test_custom_pricing(self) -> None:
        """Custom pricing replaces the defaults."""
        from llm_reliability.services.cost_tracker import CostTracker

        pricing = {"house-model": {"input": Decimal("4"), "output": Decimal("8")}}
        tracker = CostTracker(pricing=pricing)

        assert tracker.pricing is pricing
        assert tracker.calculate_cost("house-model", 500_000, 500_000) == pytest.approx(6.0)

    def test_price_usage_strips_provider(self) -> None:
        """Backend ids are priced by their model part."""
        from llm_reliability.models.attempts import Usage
        from llm_reliability.services.cost_tracker import CostTracker, model_for_backend

        assert model_for_backend("openai:gpt-4o") == "gpt-4o"
        assert model_for_backend("gpt-4o") == "gpt-4o"
        cost = CostTracker().price_usage(
            "openai:gpt-4o", Usage(input_tokens=1_000_000, output_tokens=0)
        )
        assert cost == pytest.approx(2.50)

    def test_local_models_free(self) -> None:
        """Local models are priced at zero."""
        from llm_reliability.models.attempts import Usage
        from llm_reliability.services.cost_tracker import CostTracker

        usage = Usage(input_tokens=5000, output_tokens=5000)

        assert CostTracker().price_usage("ollama:llama3", usage) == 0.0


# =============================================================================
# WBS-R5.3.3: Aggregation
# =============================================================================


class TestRecordAttempts:
    """Daily and per-backend aggregation in Redis."""

    @pytest.mark.asyncio
    async def test_daily_totals(self, cost_tracker, tracker) -> None:
        """Every attempt is added to today's totals."""
        summary = await cost_tracker.record_attempts(tracker)

        assert summary.input_tokens == 200
        assert summary.output_tokens == 50
        assert summary.cached_tokens == 20
        assert summary.total_tokens == 250
        assert summary.attempt_count == 2
        assert summary.failure_count == 1
        assert summary.total_cost == pytest.approx(0.00025)

    @pytest.mark.asyncio
    async def test_totals_accumulate(self, cost_tracker, tracker) -> None:
        """Two executions add up."""
        await cost_tracker.record_attempts(tracker)
        await cost_tracker.record_attempts(tracker)

        summary = await cost_tracker.get_daily_usage()

        assert summary.attempt_count == 4
        assert summary.input_tokens == 400

    @pytest.mark.asyncio
    async def test_usage_by_backend(self, cost_tracker, tracker) -> None:
        """Per-backend hashes are keyed by backend id."""
        await cost_tracker.record_attempts(tracker)

        by_backend = await cost_tracker.get_usage_by_backend()

        assert set(by_backend) == {"openai:gpt-4o", "ollama:llama3"}
        assert by_backend["openai:gpt-4o"].failure_count == 1
        assert by_backend["ollama:llama3"].output_tokens == 50
        assert by_backend["ollama:llama3"].failure_count == 0

    @pytest.mark.asyncio
    async def test_other_day_empty(self, cost_tracker, tracker) -> None:
        """Another date has no usage."""
        await cost_tracker.record_attempts(tracker)

        assert (await cost_tracker.get_daily_usage(date(2000, 1, 1))).attempt_count == 0
        assert await cost_tracker.get_usage_by_backend(date(2000, 1, 1)) == {}


class TestErrors:
    """Failures surface as CostTrackerError."""

    @pytest.mark.asyncio
    async def test_requires_redis(self, tracker) -> None:
        """Aggregation without a client is an error."""
        from llm_reliability.services.cost_tracker import CostTracker, CostTrackerError

        with pytest.raises(CostTrackerError):
            await CostTracker().record_attempts(tracker)

    @pytest.mark.asyncio
    async def test_redis_errors_wrapped(self) -> None:
        """Client errors are wrapped."""
        from llm_reliability.services.cost_tracker import CostTracker, CostTrackerError

        client = MagicMock()
        client.hgetall = AsyncMock(side_effect=ConnectionError("redis down"))

        with pytest.raises(CostTrackerError, match="daily usage"):
            await CostTracker(redis_client=client).get_daily_usage()
