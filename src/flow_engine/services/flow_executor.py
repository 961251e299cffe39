"""Drives flow instances through their execution plan."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable

from flow_engine.enums import (
    FLOW_TRANSITIONS,
    ErrorKind,
    EventType,
    FlowStatus,
    PauseReason,
    StepStatus,
)
from flow_engine.errors import (
    ConcurrencyConflictError,
    InvalidOperationError,
    StepTimedOutError,
)
from flow_engine.models.definition import Condition, ResumePolicy
from flow_engine.models.state import FlowError, FlowState, StepResult, StepState, utc_now
from flow_engine.services.active_flows import (
    ActiveFlowRegistry,
    FlowAlreadyAttachedError,
    PauseRequest,
)
from flow_engine.services.catalog import FlowCatalog, RegisteredFlow
from flow_engine.services.conditions import ConditionRegistry
from flow_engine.services.flow_store import RedisFlowStore
from flow_engine.services.notifier import StatusNotifier, notify_safely

logger = logging.getLogger(__name__)

Mutation = Callable[[FlowState], None]


class _FlowStopped(Exception):
    """Unwinds the batch loop when the flow left Running behind our back."""

    def __init__(self, flow: FlowState):
        self.flow = flow
        super().__init__(flow.flow_id)


@dataclass
class _StepOutcome:
    step_name: str
    attempts: int
    result: StepResult | None = None
    error: FlowError | None = None
    retries: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class FlowExecutor:
    """Runs flows batch by batch, checkpointing every transition."""

    def __init__(
        self,
        store: RedisFlowStore,
        catalog: FlowCatalog,
        notifier: StatusNotifier | None = None,
        active: ActiveFlowRegistry | None = None,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        conflict_retries: int = 3,
    ):
        if store is None:
            raise ValueError("store is required")
        if catalog is None:
            raise ValueError("catalog is required")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self._store = store
        self._catalog = catalog
        self._notifier = notifier
        self._active = active or ActiveFlowRegistry()
        self._sleep = sleep
        self._conflict_retries = conflict_retries
        self._flow_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="flow")
        self._call_pool = ThreadPoolExecutor(
            max_workers=max_workers * 4, thread_name_prefix="flow-step"
        )
        self._futures: dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    @property
    def active(self) -> ActiveFlowRegistry:
        return self._active

    @property
    def store(self) -> RedisFlowStore:
        return self._store

    @property
    def catalog(self) -> FlowCatalog:
        return self._catalog

    # -- commands ---------------------------------------------------------

    def create_flow(
        self,
        flow_type: str,
        data: dict[str, Any] | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> FlowState:
        """Instantiate a flow from its registered definition and persist it as pending."""
        registered = self._catalog.get(flow_type)
        flow = FlowState(
            flow_type=flow_type,
            user_id=user_id,
            data=dict(data or {}),
            steps=[StepState.from_definition(s) for s in registered.definition.steps],
            execution_plan=[list(batch) for batch in registered.plan],
        )
        flow.correlation_id = correlation_id or flow.flow_id
        flow.set_cursor(registered.plan[0][0])
        flow.add_event(
            EventType.FLOW_CREATED,
            f"Flow {flow_type} created",
            {"user_id": user_id, "correlation_id": flow.correlation_id},
        )
        self._store.create(flow)
        logger.info(f"Created flow {flow.flow_id} of type {flow_type}")
        return flow

    def run(self, flow_id: str) -> FlowState:
        """Start a pending flow and drive it on the calling thread."""
        flow, _ = self._launch(flow_id, "start", self._apply_start, background=False)
        return flow

    def start(self, flow_id: str) -> Future:
        """Start a pending flow on the worker pool."""
        _, future = self._launch(flow_id, "start", self._apply_start, background=True)
        return future

    def resume(
        self,
        flow_id: str,
        data: dict[str, Any] | None = None,
        reason: str = "manual",
        background: bool = False,
    ) -> FlowState:
        """Resume a paused flow from its cursor, merging ``data`` into the bag."""

        def apply(flow: FlowState) -> None:
            if flow.status != FlowStatus.PAUSED:
                raise InvalidOperationError(flow.flow_id, "resume", flow.status)
            self._transition(flow, FlowStatus.RUNNING, "resume")
            flow.status = FlowStatus.RUNNING
            flow.paused_at = None
            flow.pause_reason = None
            flow.pause_message = None
            flow.resume_policy = None
            if data:
                flow.data.update(data)
            flow.add_event(
                EventType.FLOW_RESUMED,
                f"Flow resumed: {reason}",
                {"reason": reason, "data_keys": sorted(data or {})},
            )

        return self._launch(flow_id, "resume", apply, background)[0]

    def retry(self, flow_id: str, background: bool = False) -> FlowState:
        """Re-run the failed critical step of a failed flow and continue from there."""

        def apply(flow: FlowState) -> None:
            if flow.status != FlowStatus.FAILED:
                raise InvalidOperationError(flow.flow_id, "retry", flow.status)
            failed = self._blocking_step(flow)
            if failed is None:
                raise InvalidOperationError(
                    flow.flow_id, "retry", flow.status, "no failed critical step"
                )
            failed.status = StepStatus.PENDING
            failed.attempts = 0
            failed.error = None
            failed.result = None
            failed.started_at = None
            failed.completed_at = None
            flow.status = FlowStatus.RUNNING
            flow.last_error = None
            flow.completed_at = None
            flow.current_batch_index = self._batch_of(flow, failed.name)
            flow.set_cursor(failed.name)
            flow.add_event(
                EventType.FLOW_RETRIED,
                f"Retrying step {failed.name}",
                {"step_name": failed.name},
            )

        return self._launch(flow_id, "retry", apply, background)[0]

    def continue_flow(
        self,
        flow_id: str,
        operation: str,
        prepare: Mutation,
        background: bool = False,
    ) -> FlowState:
        """Attach to a running flow, apply ``prepare`` and drive it if still running."""
        return self._launch(flow_id, operation, prepare, background)[0]

    def request_pause(
        self,
        flow_id: str,
        reason: PauseReason = PauseReason.MANUAL_INTERVENTION,
        message: str = "",
        resume_policy: ResumePolicy | None = None,
    ) -> FlowState:
        """Pause a running flow at its next batch boundary."""
        flow = self._store.load(flow_id)
        if flow.status != FlowStatus.RUNNING:
            raise InvalidOperationError(flow_id, "pause", flow.status)

        request = PauseRequest(reason=reason, message=message, resume_policy=resume_policy)
        if self._active.request_pause(flow_id, request):
            logger.info(f"Pause requested for flow {flow_id} ({reason.value})")
            return flow

        def apply(current: FlowState) -> None:
            self._transition(current, FlowStatus.PAUSED, "pause")
            if current.running_steps():
                raise InvalidOperationError(
                    flow_id,
                    "pause",
                    current.status,
                    "steps are still marked running without an executor; recover first",
                )
            self._apply_pause(current, request)

        return self._update(flow_id, "pause", apply)

    def cancel(self, flow_id: str, reason: str = "") -> FlowState:
        """Cancel a non-terminal flow. Running steps are left to finish."""

        def apply(flow: FlowState) -> None:
            self._transition(flow, FlowStatus.CANCELLED, "cancel")
            flow.status = FlowStatus.CANCELLED
            flow.cancelled_at = utc_now()
            flow.cancel_reason = reason or None
            flow.add_event(EventType.FLOW_CANCELLED, f"Flow cancelled: {reason or 'no reason'}")

        flow = self._update(flow_id, "cancel", apply)
        self._active.request_cancel(flow_id)
        return flow

    def resolve(self, flow_id: str, note: str = "") -> FlowState:
        """Close a failed flow after manual intervention."""

        def apply(flow: FlowState) -> None:
            self._transition(flow, FlowStatus.RESOLVED, "resolve")
            flow.status = FlowStatus.RESOLVED
            flow.resolution_note = note or None
            flow.completed_at = utc_now()
            flow.add_event(EventType.FLOW_RESOLVED, f"Flow resolved: {note or 'no note'}")

        return self._update(flow_id, "resolve", apply)

    def wait(self, flow_id: str, timeout: float | None = None) -> FlowState | None:
        """Block until a background run of ``flow_id`` finishes."""
        with self._futures_lock:
            future = self._futures.get(flow_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Ask attached flows to pause and stop the worker pools."""
        for flow_id in self._active.ids():
            self._active.request_pause(
                flow_id,
                PauseRequest(
                    reason=PauseReason.RESOURCE_UNAVAILABLE,
                    message="Engine shutting down",
                    resume_policy=ResumePolicy(condition=Condition(predicate="always")),
                ),
            )
        self._flow_pool.shutdown(wait=wait)
        self._call_pool.shutdown(wait=False)
        logger.info("Flow executor stopped")

    # -- transitions ------------------------------------------------------

    @staticmethod
    def _transition(flow: FlowState, target: FlowStatus, operation: str) -> None:
        if target not in FLOW_TRANSITIONS[flow.status]:
            raise InvalidOperationError(flow.flow_id, operation, flow.status)

    def _apply_start(self, flow: FlowState) -> None:
        if flow.status != FlowStatus.PENDING:
            raise InvalidOperationError(flow.flow_id, "start", flow.status)
        flow.status = FlowStatus.RUNNING
        flow.started_at = utc_now()
        flow.add_event(EventType.FLOW_STARTED, "Flow started")

    @staticmethod
    def _apply_pause(flow: FlowState, request: PauseRequest) -> None:
        flow.status = FlowStatus.PAUSED
        flow.paused_at = utc_now()
        flow.pause_reason = request.reason
        flow.pause_message = request.message or None
        flow.resume_policy = request.resume_policy
        flow.add_event(
            EventType.FLOW_PAUSED,
            f"Flow paused at {flow.current_step_name}: {request.reason.value}",
            {"reason": request.reason.value, "message": request.message},
        )

    def _update(self, flow_id: str, operation: str, mutate: Mutation) -> FlowState:
        """Load, mutate and save a flow, reloading on version conflicts."""
        for attempt in range(self._conflict_retries + 1):
            flow = self._store.load(flow_id)
            mutate(flow)
            try:
                self._store.save(flow)
            except ConcurrencyConflictError:
                if attempt >= self._conflict_retries:
                    raise
                logger.debug(f"Version conflict on {operation} of flow {flow_id}, reloading")
                continue
            logger.info(f"Flow {flow_id}: {operation} -> {flow.status.value}")
            notify_safely(self._notifier, flow)
            return flow
        raise AssertionError("unreachable")

    def _launch(
        self,
        flow_id: str,
        operation: str,
        prepare: Mutation,
        background: bool,
    ) -> tuple[FlowState, Future | None]:
        try:
            self._active.attach(flow_id)
        except FlowAlreadyAttachedError:
            flow = self._store.load(flow_id)
            raise InvalidOperationError(
                flow_id, operation, flow.status, "flow is being executed"
            ) from None

        try:
            flow = self._update(flow_id, operation, prepare)
            registered = self._catalog.get(flow.flow_type)
        except Exception:
            self._active.detach(flow_id)
            raise

        if flow.status != FlowStatus.RUNNING:
            self._active.detach(flow_id)
            return flow, None

        if not background:
            return self._drive_attached(flow, registered), None

        snapshot = flow.model_copy(deep=True)
        future = self._flow_pool.submit(self._drive_attached, flow, registered)
        with self._futures_lock:
            self._futures = {k: f for k, f in self._futures.items() if not f.done()}
            self._futures[flow_id] = future
        return snapshot, future

    def _drive_attached(self, flow: FlowState, registered: RegisteredFlow) -> FlowState:
        try:
            return self._drive(flow, registered)
        except _FlowStopped as stopped:
            logger.info(f"Flow {flow.flow_id} stopped externally as {stopped.flow.status.value}")
            return stopped.flow
        except Exception as e:
            logger.error(f"Flow {flow.flow_id} execution aborted: {e}")
            raise
        finally:
            active = self._active.detach(flow.flow_id)
            if active is not None and active.pause_request is not None:
                logger.warning(
                    f"Pause request for flow {flow.flow_id} dropped: "
                    f"flow left the running state before the next batch boundary"
                )

    # -- batch loop -------------------------------------------------------

    def _drive(self, flow: FlowState, registered: RegisteredFlow) -> FlowState:
        plan = flow.execution_plan
        logger.info(
            f"Executing flow {flow.flow_id} from batch "
            f"{flow.current_batch_index + 1}/{len(plan)}"
        )

        while flow.current_batch_index < len(plan):
            if self._honor_control_flags(flow):
                return flow

            batch = plan[flow.current_batch_index]
            runnable = self._prepare_batch(flow, registered, batch)
            if flow.status != FlowStatus.RUNNING:
                return flow

            if runnable:
                outcomes = self._run_batch(flow, registered, runnable)
                if not self._settle_batch(flow, registered, outcomes):
                    return flow

            flow.current_batch_index += 1
            if flow.current_batch_index < len(plan):
                flow.set_cursor(plan[flow.current_batch_index][0])
            self._checkpoint(flow)

        return self._complete(flow)

    def _honor_control_flags(self, flow: FlowState) -> bool:
        active = self._active.get(flow.flow_id)
        if active is None:
            return False
        if active.cancel_requested:
            latest = self._store.load(flow.flow_id)
            logger.info(f"Flow {flow.flow_id} cancelled, stopping at batch boundary")
            raise _FlowStopped(latest)

        request = self._active.take_pause_request(flow.flow_id)
        if request is None:
            return False
        self._apply_pause(flow, request)
        self._checkpoint(flow)
        logger.info(f"Flow {flow.flow_id} paused ({request.reason.value})")
        notify_safely(self._notifier, flow)
        return True

    def _skip(self, flow: FlowState, step: StepState, why: str) -> None:
        step.status = StepStatus.SKIPPED
        step.completed_at = utc_now()
        flow.add_event(
            EventType.STEP_SKIPPED,
            f"Step {step.name} skipped: {why}",
            {"step_name": step.name},
        )
        logger.info(f"Flow {flow.flow_id}: step {step.name} skipped ({why})")

    def _prepare_batch(
        self,
        flow: FlowState,
        registered: RegisteredFlow,
        batch: list[str],
    ) -> list[StepState]:
        """Settle steps that cannot run and return the ones that will.

        May pause the flow when a pause rule fires, in which case the
        returned list is empty and the pause is already persisted.
        """
        conditions = self._catalog.conditions
        owners = registered.definition.branch_owners
        runnable: list[StepState] = []

        for name in batch:
            step = flow.step(name)
            if step.is_settled:
                continue

            owner = owners.get(name)
            if owner is not None and flow.step(owner).status != StepStatus.COMPLETED:
                self._skip(flow, step, f"branch owner {owner} did not complete")
                continue

            failed = [
                dep for dep in step.step_dependencies
                if flow.step(dep).status not in (StepStatus.COMPLETED, StepStatus.SKIPPED)
            ]
            if failed:
                self._skip(flow, step, f"dependency {failed[0]} did not succeed")
                continue

            missing = [key for key in step.data_dependencies if key not in flow.data]
            if missing:
                key = missing[0]
                producer = step.data_dependencies[key]
                if flow.step(producer).status in (StepStatus.SKIPPED, StepStatus.FAILED):
                    self._skip(flow, step, f"producer {producer} of {key} did not run")
                    continue
                step.status = StepStatus.FAILED
                step.completed_at = utc_now()
                step.error = FlowError(
                    kind=ErrorKind.STEP_EXECUTION_ERROR,
                    message=f"Missing required data key: {key}",
                    step_name=step.name,
                )
                flow.add_event(
                    EventType.STEP_FAILED,
                    f"Step {step.name} failed: {step.error.message}",
                    {"step_name": step.name, "kind": step.error.kind.value},
                )
                if step.is_critical:
                    self._fail_flow(flow, step)
                    return []
                continue

            if step.condition is not None and not self._evaluate(conditions, step.condition, flow):
                self._skip(flow, step, "condition not met")
                continue

            rule = step.pause_rule
            if rule is not None and not step.pause_rule_fired and self._evaluate(
                conditions, rule.condition, flow
            ):
                step.pause_rule_fired = True
                flow.set_cursor(step.name)
                self._apply_pause(
                    flow,
                    PauseRequest(reason=rule.reason, message=rule.message, resume_policy=rule.resume),
                )
                self._checkpoint(flow)
                logger.info(f"Flow {flow.flow_id} paused by rule on step {step.name}")
                notify_safely(self._notifier, flow)
                return []

            runnable.append(step)

        return runnable

    @staticmethod
    def _evaluate(conditions: ConditionRegistry, condition: Condition, flow: FlowState) -> bool:
        try:
            return conditions.evaluate(condition, flow.data)
        except Exception as e:
            logger.warning(
                f"Flow {flow.flow_id}: condition {condition.predicate} raised, treating as false: {e}"
            )
            return False

    def _run_batch(
        self,
        flow: FlowState,
        registered: RegisteredFlow,
        runnable: list[StepState],
    ) -> list[_StepOutcome]:
        now = utc_now()
        for step in runnable:
            step.status = StepStatus.RUNNING
            step.started_at = now
            step.completed_at = None
            flow.add_event(
                EventType.STEP_STARTED,
                f"Step {step.name} started",
                {"step_name": step.name},
            )
        flow.set_cursor(runnable[0].name)
        self._checkpoint(flow)

        if len(runnable) == 1:
            step = runnable[0]
            return [self._execute_step(flow.flow_id, registered, step, dict(flow.data))]

        logger.info(f"Flow {flow.flow_id}: running {len(runnable)} steps in parallel")
        with ThreadPoolExecutor(max_workers=len(runnable)) as pool:
            futures = [
                pool.submit(self._execute_step, flow.flow_id, registered, step, dict(flow.data))
                for step in runnable
            ]
            return [future.result() for future in futures]

    def _execute_step(
        self,
        flow_id: str,
        registered: RegisteredFlow,
        step: StepState,
        data: dict[str, Any],
    ) -> _StepOutcome:
        """Run one step with its retry policy. Never raises."""
        retries: list[str] = []
        attempt = 0
        while True:
            result = None
            try:
                result = self._invoke(registered, step, dict(data))
                if result is None:
                    error = FlowError(
                        kind=ErrorKind.STEP_EXECUTION_ERROR,
                        message="Step returned no result",
                        step_name=step.name,
                    )
                elif result.is_success:
                    return _StepOutcome(step.name, attempt + 1, result=result, retries=retries)
                else:
                    error = FlowError(
                        kind=ErrorKind.STEP_EXECUTION_ERROR,
                        message=result.message or "Step reported failure",
                        step_name=step.name,
                    )
            except StepTimedOutError as e:
                error = FlowError(kind=ErrorKind.STEP_TIMED_OUT, message=str(e), step_name=step.name)
            except Exception as e:
                error = FlowError(
                    kind=ErrorKind.STEP_EXECUTION_ERROR,
                    message=f"{type(e).__name__}: {e}",
                    step_name=step.name,
                )

            if attempt >= step.max_retries:
                return _StepOutcome(
                    step.name, attempt + 1, result=result, error=error, retries=retries
                )

            delay = step.retry_delay * step.backoff_multiplier ** attempt
            logger.warning(
                f"Flow {flow_id}: step {step.name} attempt {attempt + 1} failed "
                f"({error.message}), retrying in {delay:.2f}s"
            )
            retries.append(error.message)
            if delay > 0:
                self._sleep(delay)
            attempt += 1

    def _invoke(self, registered: RegisteredFlow, step: StepState, data: dict[str, Any]) -> StepResult:
        if step.timeout is None:
            return registered.invoke(step.name, data)
        future = self._call_pool.submit(registered.invoke, step.name, data)
        try:
            return future.result(timeout=step.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise StepTimedOutError(step.name, step.timeout) from None

    def _settle_batch(
        self,
        flow: FlowState,
        registered: RegisteredFlow,
        outcomes: list[_StepOutcome],
    ) -> bool:
        """Record batch outcomes. Returns False when the flow failed."""
        critical: StepState | None = None
        now = utc_now()

        for outcome in outcomes:
            step = flow.step(outcome.step_name)
            step.attempts = outcome.attempts
            step.result = outcome.result
            step.completed_at = now
            for i, message in enumerate(outcome.retries, start=1):
                flow.add_event(
                    EventType.STEP_RETRYING,
                    f"Step {step.name} attempt {i} failed: {message}",
                    {"step_name": step.name, "attempt": i},
                )

            if outcome.succeeded:
                step.status = StepStatus.COMPLETED
                step.error = None
                output = outcome.result.data
                if step.output_keys is not None:
                    output = {k: v for k, v in output.items() if k in step.output_keys}
                flow.data.update(output)
                flow.add_event(
                    EventType.STEP_COMPLETED,
                    f"Step {step.name} completed",
                    {"step_name": step.name, "attempts": step.attempts},
                )
                logger.info(f"Flow {flow.flow_id}: step {step.name} completed")
                continue

            step.status = StepStatus.FAILED
            step.error = outcome.error
            flow.add_event(
                EventType.STEP_FAILED,
                f"Step {step.name} failed after {step.attempts} attempt(s): {outcome.error.message}",
                {"step_name": step.name, "kind": outcome.error.kind.value},
            )
            logger.error(f"Flow {flow.flow_id}: step {step.name} failed: {outcome.error.message}")
            if step.is_critical and critical is None:
                critical = step

        # Also when a sibling fails the flow: retry never re-evaluates a settled owner.
        for outcome in outcomes:
            step = flow.step(outcome.step_name)
            if step.status == StepStatus.COMPLETED and step.branches:
                self._select_branch(flow, step)

        if critical is not None:
            self._fail_flow(flow, critical)
            return False
        return True

    def _select_branch(self, flow: FlowState, owner: StepState) -> None:
        conditions = self._catalog.conditions
        selected = None
        for branch in owner.branches:
            if branch.condition is not None and self._evaluate(conditions, branch.condition, flow):
                selected = branch
                break
        if selected is None:
            selected = next((b for b in owner.branches if b.is_default), None)

        chosen = set(selected.steps) if selected is not None else set()
        for branch in owner.branches:
            for name in branch.steps:
                if name not in chosen and not flow.step(name).is_settled:
                    self._skip(flow, flow.step(name), f"branch of {owner.name} not selected")

        flow.add_event(
            EventType.BRANCH_SELECTED,
            f"Step {owner.name} selected branch: {', '.join(sorted(chosen)) or 'none'}",
            {"step_name": owner.name, "steps": sorted(chosen)},
        )

    def _fail_flow(self, flow: FlowState, step: StepState) -> None:
        self._transition(flow, FlowStatus.FAILED, "fail")
        flow.status = FlowStatus.FAILED
        flow.last_error = step.error
        flow.set_cursor(step.name)
        flow.add_event(
            EventType.FLOW_FAILED,
            f"Flow failed at step {step.name}",
            {"step_name": step.name, "kind": step.error.kind.value if step.error else None},
        )
        self._checkpoint(flow)
        logger.error(f"Flow {flow.flow_id} failed at critical step {step.name}")
        notify_safely(self._notifier, flow)

    def _complete(self, flow: FlowState) -> FlowState:
        self._transition(flow, FlowStatus.COMPLETED, "complete")
        flow.status = FlowStatus.COMPLETED
        flow.completed_at = utc_now()
        failed = [s.name for s in flow.steps if s.status == StepStatus.FAILED]
        flow.add_event(
            EventType.FLOW_COMPLETED,
            "Flow completed",
            {"failed_non_critical": failed},
        )
        self._checkpoint(flow)
        logger.info(f"Flow {flow.flow_id} completed")
        notify_safely(self._notifier, flow)
        return flow

    def _checkpoint(self, flow: FlowState) -> None:
        """Persist progress. A flow cancelled meanwhile keeps our step results."""
        try:
            self._store.save(flow)
            return
        except ConcurrencyConflictError:
            latest = self._store.load(flow.flow_id)
            if latest.status != FlowStatus.CANCELLED:
                raise

        self._adopt_progress(latest, flow)
        self._store.save(latest)
        raise _FlowStopped(latest)

    @staticmethod
    def _adopt_progress(target: FlowState, source: FlowState) -> None:
        for step in source.steps:
            current = target.step(step.name)
            if step.is_settled and not current.is_settled:
                target.steps[target.step_index(step.name)] = step.model_copy(deep=True)
        for key, value in source.data.items():
            target.data.setdefault(key, value)
        known = {e.event_id for e in target.events}
        target.events.extend(e for e in source.events if e.event_id not in known)
        target.events.sort(key=lambda e: e.timestamp)

    @staticmethod
    def _batch_of(flow: FlowState, step_name: str) -> int:
        for i, batch in enumerate(flow.execution_plan):
            if step_name in batch:
                return i
        raise KeyError(step_name)

    @staticmethod
    def _blocking_step(flow: FlowState) -> StepState | None:
        """The failed step that stopped the flow."""
        if flow.last_error is not None and flow.last_error.step_name:
            step = flow.step(flow.last_error.step_name)
            if step.status == StepStatus.FAILED:
                return step
        return flow.failed_critical_step()
