"""Status, reason and event enumerations shared by flow models."""

from enum import Enum


class FlowStatus(str, Enum):
    """Flow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESOLVED = "resolved"


TERMINAL_STATUSES = frozenset(
    {FlowStatus.COMPLETED, FlowStatus.CANCELLED, FlowStatus.RESOLVED}
)

# Allowed flow status transitions; anything else is an invalid operation.
FLOW_TRANSITIONS: dict[FlowStatus, frozenset[FlowStatus]] = {
    FlowStatus.PENDING: frozenset({FlowStatus.RUNNING, FlowStatus.CANCELLED}),
    FlowStatus.RUNNING: frozenset(
        {
            FlowStatus.PAUSED,
            FlowStatus.FAILED,
            FlowStatus.COMPLETED,
            FlowStatus.CANCELLED,
        }
    ),
    FlowStatus.PAUSED: frozenset({FlowStatus.RUNNING, FlowStatus.CANCELLED}),
    FlowStatus.FAILED: frozenset(
        {FlowStatus.RUNNING, FlowStatus.RESOLVED, FlowStatus.CANCELLED}
    ),
    FlowStatus.COMPLETED: frozenset(),
    FlowStatus.CANCELLED: frozenset(),
    FlowStatus.RESOLVED: frozenset(),
}


class StepStatus(str, Enum):
    """Step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PauseReason(str, Enum):
    """Why a flow was paused."""

    MANUAL_INTERVENTION = "manual_intervention"
    EXTERNAL_WAIT = "external_wait"
    ERROR_THROTTLE = "error_throttle"
    SCHEDULED_DELAY = "scheduled_delay"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    CUSTOM = "custom"


# Pause reasons the auto-resume loop may clear without an operator.
AUTO_RESUMABLE_REASONS = frozenset(
    {
        PauseReason.EXTERNAL_WAIT,
        PauseReason.ERROR_THROTTLE,
        PauseReason.SCHEDULED_DELAY,
        PauseReason.RESOURCE_UNAVAILABLE,
    }
)


class ErrorKind(str, Enum):
    """Classification of engine and step failures."""

    VALIDATION_ERROR = "validation_error"
    CYCLE_DETECTED = "cycle_detected"
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    STEP_EXECUTION_ERROR = "step_execution_error"
    STEP_TIMED_OUT = "step_timed_out"
    UNCONFIRMED_STEP_ON_CRASH = "unconfirmed_step_on_crash"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    INVALID_OPERATION = "invalid_operation"
    FLOW_NOT_FOUND = "flow_not_found"


class EventType(str, Enum):
    """Audit trail event types."""

    FLOW_CREATED = "flow_created"
    FLOW_STARTED = "flow_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRYING = "step_retrying"
    STEP_SKIPPED = "step_skipped"
    BRANCH_SELECTED = "branch_selected"
    FLOW_PAUSED = "flow_paused"
    FLOW_RESUMED = "flow_resumed"
    FLOW_COMPLETED = "flow_completed"
    FLOW_FAILED = "flow_failed"
    FLOW_CANCELLED = "flow_cancelled"
    FLOW_RESOLVED = "flow_resolved"
    FLOW_RETRIED = "flow_retried"
    FLOW_RECOVERED = "flow_recovered"
