"""
Fallback Planner - WBS-R3.4

Chooses the next backend of an execution.

Reference Documents:
- GUIDELINES: Fallback chain pattern for provider resilience
- Building Reactive Microservices in Java (Escoffier) Ch.6: fallback on open circuit

Planning rules:
- Candidates are scanned in order; duplicates collapse to the first occurrence.
- A candidate already considered in this execution (attempted or skipped) is
  never offered again.
- A candidate whose circuit denies the call is skipped. The skip is final for
  the execution; the circuit is not asked again even if it later recovers.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from llm_reliability.observability.metrics import record_circuit_skip
from llm_reliability.resilience.circuit_breaker_store import CircuitBreakerStore

logger = logging.getLogger(__name__)


def unique_candidates(candidates: Iterable[str]) -> list[str]:
    """Order-preserving de-duplication of candidate backend ids."""
    return list(dict.fromkeys(candidates))


@dataclass
class PlanResult:
    """
    Result of one planning step.

    Attributes:
        backend_id: Next backend to invoke, or None when the plan is exhausted
        skipped: Candidates newly skipped in this step because their circuit
            denied the call
    """

    backend_id: Optional[str]
    skipped: list[str] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.backend_id is None


class FallbackPlanner:
    """
    Picks the first candidate that is neither considered nor short-circuited.

    Example:
        >>> planner = FallbackPlanner(store)
        >>> plan = await planner.next(["a", "b"], considered=set())
        >>> plan.backend_id
        'a'
    """

    def __init__(self, circuit_store: CircuitBreakerStore) -> None:
        self._circuit_store = circuit_store

    @property
    def circuit_store(self) -> CircuitBreakerStore:
        return self._circuit_store

    async def next(self, candidates: list[str], considered: set[str]) -> PlanResult:
        """
        Plan the next attempt.

        Args:
            candidates: Ordered candidate backend ids
            considered: Ids already attempted or skipped in this execution

        Returns:
            PlanResult with the chosen backend (or None) and the new skips
        """
        skipped: list[str] = []

        for backend_id in unique_candidates(candidates):
            if backend_id in considered or backend_id in skipped:
                continue

            if await self._circuit_store.allow(backend_id):
                return PlanResult(backend_id=backend_id, skipped=skipped)

            skipped.append(backend_id)
            record_circuit_skip(backend_id)
            logger.info(
                f"Skipping {backend_id}: circuit open",
                extra={"backend": backend_id},
            )

        return PlanResult(backend_id=None, skipped=skipped)
