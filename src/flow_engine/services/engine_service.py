"""Operator-facing facade over the executor, store and recovery."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from redis.exceptions import RedisError

from flow_engine.enums import ErrorKind, FlowStatus, PauseReason
from flow_engine.errors import (
    ConcurrencyConflictError,
    FlowNotFoundError,
    InvalidOperationError,
)
from flow_engine.models.definition import ResumePolicy
from flow_engine.models.results import (
    BatchOperation,
    BatchResult,
    CommandOutcome,
    CommandResult,
    EngineHealth,
    FlowQuery,
    FlowStatistics,
    FlowTimeline,
    Page,
    RecoveryResult,
    TimelineEntry,
)
from flow_engine.models.state import FlowState, utc_now
from flow_engine.services.flow_executor import FlowExecutor
from flow_engine.services.recovery import FlowRecoveryService

logger = logging.getLogger(__name__)

RECENT_FAILURE_WINDOW = timedelta(hours=1)


class FlowEngineService:
    """Query and command surface for flows.

    Commands never raise for missing flows, invalid transitions or version
    conflicts; they report them through ``CommandResult.outcome``.
    """

    def __init__(
        self,
        executor: FlowExecutor,
        recovery: FlowRecoveryService | None = None,
        inline_execution: bool = False,
    ):
        if executor is None:
            raise ValueError("executor is required")
        self._executor = executor
        self._store = executor.store
        self._recovery = recovery or FlowRecoveryService(
            self._store, executor, background=not inline_execution
        )
        self._inline = inline_execution

    @property
    def executor(self) -> FlowExecutor:
        return self._executor

    # -- commands ---------------------------------------------------------

    def _command(self, flow_id: str, operation: str, action: Callable[[], FlowState]) -> CommandResult:
        if not flow_id:
            raise ValueError("flow_id is required")
        try:
            flow = action()
        except FlowNotFoundError as e:
            return CommandResult(flow_id=flow_id, outcome=CommandOutcome.NOT_FOUND, message=str(e))
        except InvalidOperationError as e:
            return CommandResult(
                flow_id=flow_id,
                outcome=CommandOutcome.INVALID_TRANSITION,
                message=str(e),
                status=e.status,
            )
        except ConcurrencyConflictError as e:
            return CommandResult(flow_id=flow_id, outcome=CommandOutcome.CONFLICT, message=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error during {operation} of flow {flow_id}")
            return CommandResult(
                flow_id=flow_id, outcome=CommandOutcome.INTERNAL_ERROR, message=str(e)
            )
        return CommandResult(
            flow_id=flow_id,
            outcome=CommandOutcome.OK,
            message=f"{operation} accepted",
            status=flow.status,
        )

    def create(
        self,
        flow_type: str,
        data: dict[str, Any] | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
        start: bool = False,
    ) -> FlowState:
        """Create a flow, optionally starting it right away."""
        if not flow_type:
            raise ValueError("flow_type is required")
        flow = self._executor.create_flow(flow_type, data, user_id, correlation_id)
        if start:
            self.start(flow.flow_id)
            return self._store.load(flow.flow_id)
        return flow

    def start(self, flow_id: str) -> CommandResult:
        def action() -> FlowState:
            if self._inline:
                return self._executor.run(flow_id)
            self._executor.start(flow_id)
            return self._store.load(flow_id)

        return self._command(flow_id, "start", action)

    def pause(
        self,
        flow_id: str,
        reason: PauseReason = PauseReason.MANUAL_INTERVENTION,
        message: str = "",
        resume_policy: ResumePolicy | None = None,
    ) -> CommandResult:
        result = self._command(
            flow_id,
            "pause",
            lambda: self._executor.request_pause(flow_id, reason, message, resume_policy),
        )
        if result.success and result.status == FlowStatus.RUNNING:
            return result.model_copy(
                update={
                    "message": "pause requested; applied at the next batch boundary "
                    "unless the flow finishes first"
                }
            )
        return result

    def resume(
        self,
        flow_id: str,
        data: dict[str, Any] | None = None,
        reason: str = "manual",
    ) -> CommandResult:
        return self._command(
            flow_id,
            "resume",
            lambda: self._executor.resume(flow_id, data, reason, background=not self._inline),
        )

    def cancel(self, flow_id: str, reason: str = "") -> CommandResult:
        return self._command(flow_id, "cancel", lambda: self._executor.cancel(flow_id, reason))

    def resolve(self, flow_id: str, note: str = "") -> CommandResult:
        return self._command(flow_id, "resolve", lambda: self._executor.resolve(flow_id, note))

    def retry(self, flow_id: str) -> CommandResult:
        return self._command(
            flow_id, "retry", lambda: self._executor.retry(flow_id, background=not self._inline)
        )

    def batch_operation(
        self,
        flow_ids: Iterable[str],
        operation: BatchOperation | str,
        **kwargs: Any,
    ) -> BatchResult:
        """Apply one command to many flows. Each id gets its own result."""
        operation = BatchOperation(operation)
        command = getattr(self, operation.value)
        results = []
        for flow_id in flow_ids:
            try:
                results.append(command(flow_id, **kwargs))
            except ValueError as e:
                results.append(
                    CommandResult(
                        flow_id=flow_id or "",
                        outcome=CommandOutcome.INTERNAL_ERROR,
                        message=str(e),
                    )
                )
        batch = BatchResult(operation=operation, results=results)
        logger.info(
            f"Batch {operation.value}: {batch.succeeded} succeeded, {batch.failed} failed"
        )
        return batch

    def recover_crashed_flows(self) -> RecoveryResult:
        return self._recovery.recover_crashed_flows()

    # -- queries ----------------------------------------------------------

    def query(self, query: FlowQuery | None = None) -> Page:
        return self._store.query(query)

    def get_by_id(self, flow_id: str) -> FlowState | None:
        if not flow_id:
            raise ValueError("flow_id is required")
        try:
            return self._store.load(flow_id)
        except FlowNotFoundError:
            return None

    def get_timeline(self, flow_id: str) -> FlowTimeline | None:
        """Events of a flow in chronological order."""
        flow = self.get_by_id(flow_id)
        if flow is None:
            return None
        entries = [
            TimelineEntry(
                timestamp=event.timestamp,
                event_type=event.event_type,
                description=event.description,
                step_name=event.data.get("step_name"),
                data=event.data,
            )
            for event in sorted(flow.events, key=lambda e: e.timestamp)
        ]
        return FlowTimeline(flow_id=flow.flow_id, status=flow.status, entries=entries)

    def compute_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> FlowStatistics:
        """Aggregate flows created between ``start`` and ``end``."""
        if start is not None and end is not None and start > end:
            raise ValueError("start must not be after end")

        flows = self._store.find(FlowQuery(created_after=start, created_before=end))
        by_status: dict[FlowStatus, int] = {}
        by_flow_type: dict[str, int] = {}
        by_pause_reason: dict[PauseReason, int] = {}
        failures_by_kind: dict[ErrorKind, int] = {}
        durations: list[float] = []

        for flow in flows:
            by_status[flow.status] = by_status.get(flow.status, 0) + 1
            by_flow_type[flow.flow_type] = by_flow_type.get(flow.flow_type, 0) + 1
            if flow.status == FlowStatus.PAUSED and flow.pause_reason is not None:
                by_pause_reason[flow.pause_reason] = by_pause_reason.get(flow.pause_reason, 0) + 1
            if flow.status == FlowStatus.FAILED and flow.last_error is not None:
                kind = flow.last_error.kind
                failures_by_kind[kind] = failures_by_kind.get(kind, 0) + 1
            if flow.status == FlowStatus.COMPLETED and flow.duration_seconds is not None:
                durations.append(flow.duration_seconds)

        total = len(flows)
        completed = by_status.get(FlowStatus.COMPLETED, 0)
        return FlowStatistics(
            start=start,
            end=end,
            total_flows=total,
            by_status=by_status,
            by_flow_type=by_flow_type,
            by_pause_reason=by_pause_reason,
            failures_by_kind=failures_by_kind,
            average_duration_seconds=sum(durations) / len(durations) if durations else None,
            success_rate=completed / total if total else 0.0,
        )

    def health(self) -> EngineHealth:
        """Report store reachability and current load."""
        now = utc_now()
        try:
            running = len(self._store.ids_with_status(FlowStatus.RUNNING))
            paused = len(self._store.ids_with_status(FlowStatus.PAUSED))
            failed = self._store.find(FlowQuery(statuses=[FlowStatus.FAILED]))
        except RedisError as e:
            logger.error(f"Health check failed: {e}")
            return EngineHealth(
                is_healthy=False,
                status=f"store unavailable: {e}",
                active_flows=len(self._executor.active),
                running_flows=0,
                paused_flows=0,
                recent_failures=0,
                checked_at=now,
            )

        recent = sum(1 for f in failed if now - f.updated_at <= RECENT_FAILURE_WINDOW)
        return EngineHealth(
            is_healthy=True,
            status="degraded" if recent else "healthy",
            active_flows=len(self._executor.active),
            running_flows=running,
            paused_flows=paused,
            recent_failures=recent,
            checked_at=now,
        )
