"""
Pytest configuration for the reliability engine test suite.

Reference Documents:
- GUIDELINES pp. 155-157: "high and low gear" testing philosophy
- GUIDELINES pp. 157: FakeRepository pattern using duck typing
- GUIDELINES pp. 242 (Newman): AI tests require mocks simulating varying response times,
  occasional failures, and context-dependent outputs

This configuration sets up:
- Test markers for categorization
- Shared fixtures following FakeRepository pattern
- A controllable clock and a scripted invoke capability
"""

import asyncio
from typing import Any, Optional

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio


# =============================================================================
# Test Markers
# =============================================================================


def pytest_configure(config):
    """
    Register custom markers for test categorization.

    - unit: Low gear tests for individual components (primitives)
    - integration: High gear tests for component interactions (domain)
    - slow: Tests that take a long time to run
    """
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests for component interactions")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


# =============================================================================
# FakeRedis Fixture
# =============================================================================


@pytest_asyncio.fixture
async def fake_redis():
    """
    Create a fake Redis client for testing.

    Reference: GUIDELINES pp. 157 - FakeRepository pattern
    "Python's duck typing enables test doubles without complex mocking frameworks"

    Returns:
        FakeRedis: A fake Redis client with decode_responses=True
    """
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield redis
    await redis.aclose()


@pytest_asyncio.fixture
async def redis_outage():
    """
    Fake Redis server and client for outage tests.

    Set server.connected = False to make every command fail with
    redis.exceptions.ConnectionError.

    Returns:
        (FakeServer, FakeRedis)
    """
    server = fakeredis.FakeServer()
    redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    yield server, redis
    server.connected = True
    await redis.aclose()


# =============================================================================
# Test Settings Fixture
# =============================================================================


@pytest.fixture
def test_settings():
    """
    Create test settings with safe defaults.

    In-memory stores, small thresholds, short timeout.
    """
    from llm_reliability.core.config import Settings

    return Settings(
        service_name="llm-reliability-test",
        environment="development",
        redis_url="redis://localhost:6379",
        circuit_breaker_failure_threshold=3,
        circuit_breaker_recovery_timeout_seconds=30.0,
        circuit_breaker_window_seconds=60.0,
        circuit_breaker_backend="memory",
        total_timeout_seconds=5.0,
        tracking_store_backend="memory",
    )


# =============================================================================
# Clock Fixture
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Controllable time source for breakers and budgets."""
    return FakeClock()


# =============================================================================
# Scripted Invoke Fixture
# =============================================================================


class ScriptedInvoke:
    """
    invoke(backend_id, remaining_seconds) test double.

    script maps a backend id to one step or a list of steps. A step that is an
    exception is raised, anything else is returned. The last step of a list
    repeats. Backends without a script answer with a default response.

    delays maps a backend id to seconds slept (cancellably) before answering.
    """

    def __init__(
        self,
        script: Optional[dict[str, Any]] = None,
        delays: Optional[dict[str, float]] = None,
    ) -> None:
        self._script = {
            backend: list(steps) if isinstance(steps, list) else [steps]
            for backend, steps in (script or {}).items()
        }
        self._delays = delays or {}
        self.calls: list[tuple[str, Optional[float]]] = []
        self.cancelled: list[str] = []

    @property
    def called_backends(self) -> list[str]:
        return [backend for backend, _ in self.calls]

    async def __call__(self, backend_id: str, remaining: Optional[float]) -> Any:
        self.calls.append((backend_id, remaining))

        delay = self._delays.get(backend_id)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(backend_id)
                raise

        steps = self._script.get(backend_id)
        if not steps:
            return {
                "content": f"answer from {backend_id}",
                "usage": {"input_tokens": 10, "output_tokens": 5},
            }
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture
def scripted_invoke():
    """Factory for ScriptedInvoke instances."""
    return ScriptedInvoke
