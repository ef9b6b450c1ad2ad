"""
Completion State Machine - WBS-R5.2 Execution Instrumentation

Wraps one executor run in a persisted tracking record and guarantees the
record reaches exactly one terminal status.

Reference Documents:
- Release It! (Nygard): Steady State, never leave work half-recorded
- GUIDELINES: Bookkeeping never changes the caller's outcome

States:
    running -> success          executor returned
    running -> timeout          TotalTimeoutExceededError
    running -> error            any other error (re-raised unchanged)
    running -> error            emergency path, conditional on still running

Rules:
- The running record is created before the executor starts. If creation
  fails the execution still runs, and finalization creates a complete record
  instead of updating one.
- `finalized` is set only after the terminal write returned. Whenever it is
  still false on the way out (write failure, caller cancellation, anything),
  the emergency path runs a conditional update that only applies while the
  stored status is still running.
- The emergency path receives the originating error explicitly. When none is
  known it synthesizes IncompleteExecutionError with the current stack.
- Store failures are logged and absorbed.
"""

import asyncio
import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from llm_reliability.core.exceptions import (
    IncompleteExecutionError,
    ReliabilityError,
    TotalTimeoutExceededError,
)
from llm_reliability.models.attempts import (
    DEFAULT_ERROR_MESSAGE_MAX_LENGTH,
    AttemptTracker,
)
from llm_reliability.models.execution import (
    ExecutionOutcome,
    ExecutionStatus,
    tracker_fields,
)
from llm_reliability.observability.logging import correlation_id_context
from llm_reliability.observability.metrics import (
    record_emergency_finalization,
    record_execution,
)
from llm_reliability.observability.tracing import create_span
from llm_reliability.resilience.deadline import DeadlineBudget
from llm_reliability.resilience.executor import Invoke, ReliabilityExecutor
from llm_reliability.resilience.fallback_planner import unique_candidates
from llm_reliability.services.cost_tracker import CostTracker
from llm_reliability.services.tracking_store import TrackingRecordStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """
    Mutable bookkeeping of one instrumented execution.

    Attributes:
        candidates: De-duplicated candidate list
        tracker: Attempt tracker shared with the executor
        budget: Deadline budget shared with the executor
        metadata: Caller context persisted on the record
        record_id: Tracking record id (None while no record exists)
        finalized: Whether a terminal write has returned
        status: Terminal status written, if any
        error: Originating error, if any
    """

    candidates: list[str]
    tracker: AttemptTracker
    budget: DeadlineBudget
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    record_id: Optional[str] = None
    finalized: bool = False
    status: Optional[ExecutionStatus] = None
    error: Optional[BaseException] = None

    @property
    def duration_ms(self) -> int:
        return round(self.budget.elapsed() * 1000)


class CompletionStateMachine:
    """
    Instrumented execution: tracking record plus executor run.

    Example:
        >>> machine = CompletionStateMachine(executor, InMemoryTrackingStore())
        >>> outcome = await machine.run(["openai:gpt-4o", "ollama:llama3"], invoke)
        >>> outcome.tracking_id
        '4f1c...'
    """

    def __init__(
        self,
        executor: ReliabilityExecutor,
        store: TrackingRecordStore,
        cost_tracker: Optional[CostTracker] = None,
        error_message_max_length: int = DEFAULT_ERROR_MESSAGE_MAX_LENGTH,
    ) -> None:
        """
        Initialize CompletionStateMachine.

        Args:
            executor: Fallback executor to instrument
            store: Tracking record repository
            cost_tracker: Aggregates per-backend usage after finalize (optional)
            error_message_max_length: Truncation limit for stored error messages
        """
        self._executor = executor
        self._store = store
        self._cost_tracker = cost_tracker
        self._error_message_max_length = error_message_max_length

    @property
    def store(self) -> TrackingRecordStore:
        return self._store

    # =========================================================================
    # Run
    # =========================================================================

    async def run(
        self,
        candidates: list[str],
        invoke: Invoke,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ExecutionOutcome:
        """
        Run the executor and drive the tracking record to a terminal status.

        Args:
            candidates: Ordered candidate backend ids
            invoke: Async callable (backend_id, remaining_seconds) -> response
            metadata: Caller context stored on the record

        Returns:
            ExecutionOutcome of the successful execution

        Raises:
            AllBackendsFailedError: Re-raised from the executor
            TotalTimeoutExceededError: Re-raised from the executor
            Exception: Any other executor error, re-raised unchanged
        """
        candidates = unique_candidates(candidates)
        ctx = ExecutionContext(
            candidates=candidates,
            tracker=self._executor.new_tracker(candidates),
            budget=self._executor.new_budget(),
            metadata=dict(metadata or {}),
        )

        await self._create_running(ctx)

        with correlation_id_context(ctx.record_id or uuid.uuid4().hex), create_span(
            "reliability.execution",
            {"tracking_id": ctx.record_id, "candidates": ",".join(candidates)},
        ):
            try:
                try:
                    result = await self._executor.run(
                        candidates, invoke, tracker=ctx.tracker, budget=ctx.budget
                    )
                except TotalTimeoutExceededError as e:
                    ctx.error = e
                    await self._finalize(ctx, ExecutionStatus.TIMEOUT)
                    self._annotate(ctx, e)
                    raise
                except Exception as e:
                    ctx.error = e
                    await self._finalize(ctx, ExecutionStatus.ERROR)
                    self._annotate(ctx, e)
                    raise
                except asyncio.CancelledError as e:
                    ctx.error = e
                    raise

                await self._finalize(ctx, ExecutionStatus.SUCCESS)
                return ExecutionOutcome.from_tracker(
                    ctx.tracker,
                    success=True,
                    response=result.response,
                    duration_ms=ctx.duration_ms,
                    tracking_id=ctx.record_id,
                )
            finally:
                if not ctx.finalized:
                    await self._emergency_finalize(ctx)

    # =========================================================================
    # Record Lifecycle
    # =========================================================================

    async def _create_running(self, ctx: ExecutionContext) -> None:
        try:
            record = await self._store.create(
                status=ExecutionStatus.RUNNING,
                candidates=ctx.candidates,
                started_at=ctx.started_at,
                metadata=ctx.metadata,
            )
        except Exception as e:
            logger.error(
                "Failed to create running tracking record, continuing without one",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            return
        ctx.record_id = record.id

    def _terminal_fields(
        self,
        ctx: ExecutionContext,
        status: ExecutionStatus,
        error: Optional[BaseException],
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "status": status,
            "completed_at": datetime.now(timezone.utc),
            "duration_ms": ctx.duration_ms,
            **tracker_fields(ctx.tracker),
        }
        if error is not None:
            message = str(error)
            if isinstance(error, IncompleteExecutionError):
                message = f"{message}\n{error.stack}"
            fields["error_class"] = type(error).__name__
            fields["error_message"] = self._truncate(message)
        return fields

    async def _write_terminal(self, ctx: ExecutionContext, fields: dict[str, Any]) -> None:
        """Update the record, or create a complete one when none exists."""
        if ctx.record_id is None:
            record = await self._store.create(
                candidates=ctx.candidates,
                started_at=ctx.started_at,
                metadata=ctx.metadata,
                **fields,
            )
            ctx.record_id = record.id
        else:
            await self._store.update(ctx.record_id, **fields)

    async def _finalize(self, ctx: ExecutionContext, status: ExecutionStatus) -> None:
        """Normal terminal write. Failures are absorbed and leave finalized False."""
        fields = self._terminal_fields(ctx, status, ctx.error)
        try:
            await self._write_terminal(ctx, fields)
        except Exception as e:
            logger.error(
                f"Failed to finalize tracking record as {status.value}",
                extra={
                    "tracking_id": ctx.record_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return

        ctx.finalized = True
        ctx.status = status
        record_execution(status.value, ctx.duration_ms / 1000)
        logger.info(
            f"Execution finished: {status.value}",
            extra={
                "tracking_id": ctx.record_id,
                "chosen_backend": ctx.tracker.chosen_backend,
                "attempts": ctx.tracker.attempts_count,
                "used_fallback": ctx.tracker.used_fallback,
                "duration_ms": ctx.duration_ms,
            },
        )
        await self._record_usage(ctx)

    async def _emergency_finalize(self, ctx: ExecutionContext) -> None:
        """Force a still-running record to error without overwriting a terminal one."""
        error = ctx.error
        if error is None:
            error = IncompleteExecutionError("".join(traceback.format_stack()))
        fields = self._terminal_fields(ctx, ExecutionStatus.ERROR, error)

        try:
            if ctx.record_id is None:
                await self._write_terminal(ctx, fields)
                applied = True
            else:
                applied = await self._store.update_if_running(ctx.record_id, **fields)
        except Exception as e:
            record_emergency_finalization(False)
            logger.error(
                "Emergency finalize failed, tracking record may stay running",
                extra={
                    "tracking_id": ctx.record_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "original_error_type": type(error).__name__,
                },
            )
            return

        record_emergency_finalization(applied)
        if applied:
            ctx.finalized = True
            ctx.status = ExecutionStatus.ERROR
            record_execution(ExecutionStatus.ERROR.value, ctx.duration_ms / 1000)
        logger.warning(
            "Emergency finalize of tracking record",
            extra={
                "tracking_id": ctx.record_id,
                "applied": applied,
                "original_error_type": type(error).__name__,
            },
        )

    async def _record_usage(self, ctx: ExecutionContext) -> None:
        if self._cost_tracker is None or not ctx.tracker.attempts:
            return
        try:
            await self._cost_tracker.record_attempts(ctx.tracker)
        except Exception as e:
            logger.warning(
                "Failed to record backend usage",
                extra={"tracking_id": ctx.record_id, "error": str(e)},
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _annotate(self, ctx: ExecutionContext, error: BaseException) -> None:
        """Attach execution duration and tracking id to a raised engine error."""
        if isinstance(error, ReliabilityError):
            error.duration_ms = ctx.duration_ms
            error.tracking_id = ctx.record_id

    def _truncate(self, message: str) -> str:
        limit = self._error_message_max_length
        if len(message) <= limit:
            return message
        return message[: limit - 3] + "..."
