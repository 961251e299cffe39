"""Background service that resumes paused flows whose wait is over."""

import logging
import threading
from datetime import datetime, timedelta

from flow_engine.enums import AUTO_RESUMABLE_REASONS, FlowStatus
from flow_engine.errors import ConcurrencyConflictError, InvalidOperationError
from flow_engine.models.results import AutoResumeReport, FlowQuery
from flow_engine.models.state import FlowState, utc_now
from flow_engine.services.conditions import ConditionRegistry
from flow_engine.services.flow_executor import FlowExecutor
from flow_engine.services.flow_store import RedisFlowStore

logger = logging.getLogger(__name__)


class FlowAutoResumeService:
    """Periodically resumes paused flows.

    A flow is a candidate when it was paused for an auto-resumable reason or
    carries a resume policy. Without a policy a candidate is resumed on the
    next pass.
    """

    def __init__(
        self,
        store: RedisFlowStore,
        executor: FlowExecutor,
        conditions: ConditionRegistry | None = None,
        interval: float = 30.0,
        background: bool = True,
    ):
        if store is None:
            raise ValueError("store is required")
        if executor is None:
            raise ValueError("executor is required")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._store = store
        self._executor = executor
        self._conditions = conditions or executor.catalog.conditions
        self._interval = interval
        self._background = background
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def should_resume(self, flow: FlowState, now: datetime | None = None) -> bool:
        policy = flow.resume_policy
        if policy is None:
            return False

        now = now or utc_now()
        if policy.after_seconds is not None and policy.resume_on_timeout:
            paused_at = flow.paused_at or flow.updated_at
            if now - paused_at >= timedelta(seconds=policy.after_seconds):
                return True

        if policy.condition is not None:
            try:
                return self._conditions.evaluate(policy.condition, flow.data)
            except Exception as e:
                logger.warning(f"Resume condition of flow {flow.flow_id} raised: {e}")
        return False

    def check_and_resume(self) -> AutoResumeReport:
        """Run one pass over paused flows."""
        report = AutoResumeReport()
        now = utc_now()
        paused = self._store.find(FlowQuery(statuses=[FlowStatus.PAUSED]))

        for flow in paused:
            if flow.resume_policy is None and flow.pause_reason not in AUTO_RESUMABLE_REASONS:
                continue
            report.checked += 1
            if not self.should_resume(flow, now):
                continue

            try:
                self._executor.resume(flow.flow_id, reason="auto", background=self._background)
            except (ConcurrencyConflictError, InvalidOperationError) as e:
                logger.info(f"Skipped auto-resume of flow {flow.flow_id}: {e}")
                report.skipped += 1
            except Exception as e:
                logger.error(f"Auto-resume of flow {flow.flow_id} failed: {e}")
                report.errors += 1
            else:
                logger.info(f"Auto-resumed flow {flow.flow_id}")
                report.resumed.append(flow.flow_id)

        if report.checked:
            logger.info(
                f"Auto-resume pass: {report.checked} checked, {len(report.resumed)} resumed, "
                f"{report.skipped} skipped, {report.errors} errors"
            )
        return report

    def _loop(self) -> None:
        logger.info(f"Auto-resume started, checking every {self._interval}s")
        while not self._stop.wait(self._interval):
            try:
                self.check_and_resume()
            except Exception as e:
                logger.error(f"Error in auto-resume loop: {e}")
        logger.info("Auto-resume stopped")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="flow-auto-resume", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
