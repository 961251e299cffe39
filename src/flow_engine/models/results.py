"""Query, summary and command result models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from flow_engine.enums import ErrorKind, EventType, FlowStatus, PauseReason
from flow_engine.models.state import FlowState


class FlowQuery(BaseModel):
    """Filter and page selection over persisted flows."""

    statuses: list[FlowStatus] | None = None
    user_id: str | None = None
    flow_type: str | None = None
    correlation_id: str | None = None
    pause_reason: PauseReason | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=10_000)

    def matches(self, flow: FlowState) -> bool:
        if self.statuses and flow.status not in self.statuses:
            return False
        if self.user_id and flow.user_id != self.user_id:
            return False
        if self.flow_type and flow.flow_type != self.flow_type:
            return False
        if self.correlation_id and flow.correlation_id != self.correlation_id:
            return False
        if self.pause_reason and flow.pause_reason != self.pause_reason:
            return False
        if self.created_after and flow.created_at < self.created_after:
            return False
        if self.created_before and flow.created_at > self.created_before:
            return False
        return True


class FlowSummary(BaseModel):
    """Flow metadata returned by queries."""

    model_config = ConfigDict(frozen=True)

    flow_id: str
    flow_type: str
    status: FlowStatus
    user_id: str | None = None
    correlation_id: str = ""
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime
    current_step_name: str = ""
    current_step_index: int = 0
    total_steps: int = 0
    pause_reason: PauseReason | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    duration_seconds: float | None = None

    @classmethod
    def from_state(cls, flow: FlowState) -> "FlowSummary":
        return cls(
            flow_id=flow.flow_id,
            flow_type=flow.flow_type,
            status=flow.status,
            user_id=flow.user_id,
            correlation_id=flow.correlation_id,
            created_at=flow.created_at,
            started_at=flow.started_at,
            completed_at=flow.completed_at,
            updated_at=flow.updated_at,
            current_step_name=flow.current_step_name,
            current_step_index=flow.current_step_index,
            total_steps=len(flow.steps),
            pause_reason=flow.pause_reason,
            error_kind=flow.last_error.kind if flow.last_error else None,
            error_message=flow.last_error.message if flow.last_error else None,
            duration_seconds=flow.duration_seconds,
        )


class Page(BaseModel):
    """One page of query results."""

    model_config = ConfigDict(frozen=True)

    items: list[FlowSummary]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total_count + self.page_size - 1) // self.page_size


class TimelineEntry(BaseModel):
    """One event on a flow's timeline."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    event_type: EventType
    description: str
    step_name: str | None = None
    data: dict[str, Any] = {}


class FlowTimeline(BaseModel):
    """Chronological view of a flow's audit trail."""

    model_config = ConfigDict(frozen=True)

    flow_id: str
    status: FlowStatus
    entries: list[TimelineEntry]


class CommandOutcome(str, Enum):
    """Result classification of an operator command."""

    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"


class CommandResult(BaseModel):
    """Structured result of an operator command."""

    model_config = ConfigDict(frozen=True)

    flow_id: str
    outcome: CommandOutcome
    message: str = ""
    status: FlowStatus | None = None

    @property
    def success(self) -> bool:
        return self.outcome == CommandOutcome.OK


class BatchOperation(str, Enum):
    """Operator commands that can be applied to many flows at once."""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    RESOLVE = "resolve"
    RETRY = "retry"


class BatchResult(BaseModel):
    """Per-item outcomes of a batch operation."""

    model_config = ConfigDict(frozen=True)

    operation: BatchOperation
    results: list[CommandResult]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded


class RecoveryResult(BaseModel):
    """Summary of a crashed-flow recovery pass."""

    checked_count: int = 0
    recovered_ids: list[str] = []
    failed_ids: list[str] = []
    errors: dict[str, str] = {}
    started_at: datetime
    completed_at: datetime | None = None

    @property
    def recovered_count(self) -> int:
        return len(self.recovered_ids)

    @property
    def failed_count(self) -> int:
        return len(self.failed_ids)


class AutoResumeReport(BaseModel):
    """Counts from one auto-resume pass."""

    checked: int = 0
    resumed: list[str] = []
    skipped: int = 0
    errors: int = 0


class FlowStatistics(BaseModel):
    """Aggregates over flows created in a date range."""

    model_config = ConfigDict(frozen=True)

    start: datetime | None
    end: datetime | None
    total_flows: int
    by_status: dict[FlowStatus, int]
    by_flow_type: dict[str, int]
    by_pause_reason: dict[PauseReason, int]
    failures_by_kind: dict[ErrorKind, int]
    average_duration_seconds: float | None
    success_rate: float


class EngineHealth(BaseModel):
    """Point-in-time health report of the engine."""

    model_config = ConfigDict(frozen=True)

    is_healthy: bool
    status: str
    active_flows: int
    running_flows: int
    paused_flows: int
    recent_failures: int
    checked_at: datetime
