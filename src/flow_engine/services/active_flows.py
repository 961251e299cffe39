"""Process-wide registry of flows currently attached to an executor."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flow_engine.enums import PauseReason
from flow_engine.models.definition import ResumePolicy


class FlowAlreadyAttachedError(Exception):
    """Raised when a second executor tries to drive the same flow."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow already attached to an executor: {flow_id}")


@dataclass
class PauseRequest:
    """Pause waiting to be applied at the next batch boundary."""

    reason: PauseReason
    message: str = ""
    resume_policy: ResumePolicy | None = None


@dataclass
class ActiveFlow:
    """Cooperative control flags for one running flow."""

    flow_id: str
    attached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pause_request: PauseRequest | None = None
    cancel_requested: bool = False


class ActiveFlowRegistry:
    """Tracks which flows have a live executor in this process."""

    def __init__(self):
        self._flows: dict[str, ActiveFlow] = {}
        self._lock = threading.Lock()

    def attach(self, flow_id: str) -> ActiveFlow:
        if not flow_id:
            raise ValueError("flow_id is required")
        with self._lock:
            if flow_id in self._flows:
                raise FlowAlreadyAttachedError(flow_id)
            active = ActiveFlow(flow_id=flow_id)
            self._flows[flow_id] = active
            return active

    def detach(self, flow_id: str) -> ActiveFlow | None:
        """Remove a flow and return its flags as they were left."""
        with self._lock:
            return self._flows.pop(flow_id, None)

    def get(self, flow_id: str) -> ActiveFlow | None:
        with self._lock:
            return self._flows.get(flow_id)

    def is_attached(self, flow_id: str) -> bool:
        with self._lock:
            return flow_id in self._flows

    def request_pause(self, flow_id: str, request: PauseRequest) -> bool:
        """Flag an attached flow for pausing. Returns False if not attached."""
        with self._lock:
            active = self._flows.get(flow_id)
            if active is None:
                return False
            active.pause_request = request
            return True

    def request_cancel(self, flow_id: str) -> bool:
        """Flag an attached flow for cancellation. Returns False if not attached."""
        with self._lock:
            active = self._flows.get(flow_id)
            if active is None:
                return False
            active.cancel_requested = True
            return True

    def take_pause_request(self, flow_id: str) -> PauseRequest | None:
        """Pop the pending pause request for a flow, if any."""
        with self._lock:
            active = self._flows.get(flow_id)
            if active is None or active.pause_request is None:
                return None
            request, active.pause_request = active.pause_request, None
            return request

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._flows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)
