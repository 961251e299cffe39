"""Durable state models for flow and step tracking."""

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from flow_engine.enums import (
    TERMINAL_STATUSES,
    ErrorKind,
    EventType,
    FlowStatus,
    PauseReason,
    StepStatus,
)
from flow_engine.models.definition import ResumePolicy, StepDefinition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepResult(BaseModel):
    """Output of a step's business logic."""

    is_success: bool
    message: str = ""
    data: dict[str, Any] = {}

    @classmethod
    def success(cls, data: dict[str, Any] | None = None, message: str = "") -> "StepResult":
        return cls(is_success=True, message=message, data=data or {})

    @classmethod
    def failure(cls, message: str, data: dict[str, Any] | None = None) -> "StepResult":
        return cls(is_success=False, message=message, data=data or {})


class FlowError(BaseModel):
    """Most recent failure recorded on a flow or step."""

    kind: ErrorKind
    message: str
    step_name: str | None = None


class FlowEvent(BaseModel):
    """Audit trail entry. Never mutated once appended."""

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_type: EventType
    description: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = {}


class StepState(StepDefinition):
    """Persistent state of a step: its definition plus runtime progress."""

    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    result: StepResult | None = None
    error: FlowError | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    pause_rule_fired: bool = False

    @classmethod
    def from_definition(cls, definition: StepDefinition) -> "StepState":
        return cls(**definition.model_dump())

    @property
    def is_settled(self) -> bool:
        return self.status in (
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        )


class FlowState(BaseModel):
    """Persistent state of one flow instance."""

    flow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_type: str
    status: FlowStatus = FlowStatus.PENDING
    version: int = 0
    user_id: str | None = None
    correlation_id: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    paused_at: datetime | None = None
    cancelled_at: datetime | None = None
    current_step_index: int = 0
    current_step_name: str = ""
    current_batch_index: int = 0
    pause_reason: PauseReason | None = None
    pause_message: str | None = None
    resume_policy: ResumePolicy | None = None
    cancel_reason: str | None = None
    resolution_note: str | None = None
    last_error: FlowError | None = None
    data: dict[str, Any] = {}
    events: list[FlowEvent] = []
    steps: list[StepState] = []
    execution_plan: list[list[str]] = []

    def step(self, name: str) -> StepState:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def step_index(self, name: str) -> int:
        for i, step in enumerate(self.steps):
            if step.name == name:
                return i
        raise KeyError(name)

    def set_cursor(self, name: str) -> None:
        """Point the resume cursor at step ``name``."""
        self.current_step_index = self.step_index(name)
        self.current_step_name = name

    def add_event(
        self,
        event_type: EventType,
        description: str,
        data: dict[str, Any] | None = None,
    ) -> FlowEvent:
        event = FlowEvent(event_type=event_type, description=description, data=data or {})
        self.events.append(event)
        return event

    def running_steps(self) -> list[StepState]:
        return [s for s in self.steps if s.status == StepStatus.RUNNING]

    def failed_critical_step(self) -> StepState | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED and step.is_critical:
                return step
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
