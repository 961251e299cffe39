"""Detects and repairs flows left running by a crashed process."""

import logging

from flow_engine.enums import ErrorKind, EventType, FlowStatus, StepStatus
from flow_engine.errors import FlowEngineError
from flow_engine.models.results import RecoveryResult
from flow_engine.models.state import FlowError, FlowState, utc_now
from flow_engine.services.active_flows import ActiveFlowRegistry
from flow_engine.services.flow_executor import FlowExecutor
from flow_engine.services.flow_store import RedisFlowStore

logger = logging.getLogger(__name__)


class FlowRecoveryService:
    """Finds running flows no executor is attached to and continues them.

    A step that was running when the process died is re-run only if it is
    idempotent. Otherwise its completion cannot be confirmed and the flow is
    failed for an operator to resolve or retry.
    """

    def __init__(
        self,
        store: RedisFlowStore,
        executor: FlowExecutor,
        active: ActiveFlowRegistry | None = None,
        background: bool = False,
    ):
        if store is None:
            raise ValueError("store is required")
        if executor is None:
            raise ValueError("executor is required")
        self._store = store
        self._executor = executor
        self._active = active or executor.active
        self._background = background

    def crashed_flow_ids(self) -> list[str]:
        return [
            flow_id
            for flow_id in self._store.ids_with_status(FlowStatus.RUNNING)
            if not self._active.is_attached(flow_id)
        ]

    @staticmethod
    def _prepare(flow: FlowState) -> None:
        if flow.status != FlowStatus.RUNNING:
            raise FlowEngineError(f"Flow {flow.flow_id} is no longer running")

        running = flow.running_steps()
        unconfirmed = [s for s in running if not s.is_idempotent]
        if unconfirmed:
            step = unconfirmed[0]
            step.status = StepStatus.FAILED
            step.completed_at = utc_now()
            step.error = FlowError(
                kind=ErrorKind.UNCONFIRMED_STEP_ON_CRASH,
                message=f"Step {step.name} was running during a crash and is not idempotent",
                step_name=step.name,
            )
            for other in running:
                if other is not step:
                    other.status = StepStatus.PENDING
            flow.status = FlowStatus.FAILED
            flow.last_error = step.error
            flow.set_cursor(step.name)
            flow.add_event(
                EventType.FLOW_FAILED,
                step.error.message,
                {"step_name": step.name, "kind": step.error.kind.value},
            )
            return

        for step in running:
            step.status = StepStatus.PENDING
            step.started_at = None
        flow.add_event(
            EventType.FLOW_RECOVERED,
            "Flow recovered after crash",
            {"reset_steps": [s.name for s in running]},
        )

    def recover_crashed_flows(self) -> RecoveryResult:
        """Scan for orphaned running flows and recover each one independently."""
        result = RecoveryResult(started_at=utc_now())
        flow_ids = self.crashed_flow_ids()
        logger.info(f"Recovery found {len(flow_ids)} orphaned running flow(s)")

        for flow_id in flow_ids:
            result.checked_count += 1
            try:
                flow = self._executor.continue_flow(
                    flow_id, "recover", self._prepare, background=self._background
                )
            except Exception as e:
                logger.error(f"Recovery of flow {flow_id} failed: {e}")
                result.failed_ids.append(flow_id)
                result.errors[flow_id] = str(e)
                continue

            if flow.last_error is not None and flow.last_error.kind == ErrorKind.UNCONFIRMED_STEP_ON_CRASH:
                logger.warning(f"Flow {flow_id} failed during recovery: {flow.last_error.message}")
                result.failed_ids.append(flow_id)
                result.errors[flow_id] = flow.last_error.message
            else:
                logger.info(f"Flow {flow_id} recovered")
                result.recovered_ids.append(flow_id)

        result.completed_at = utc_now()
        logger.info(
            f"Recovery finished: {result.recovered_count} recovered, "
            f"{result.failed_count} failed"
        )
        return result
