"""Models package."""

from flow_engine.models.definition import (
    Branch,
    Condition,
    FlowDefinition,
    PauseRule,
    ResumePolicy,
    StepDefinition,
    resolve_execution_order,
    validate_definition,
)
from flow_engine.models.results import (
    AutoResumeReport,
    BatchOperation,
    BatchResult,
    CommandOutcome,
    CommandResult,
    EngineHealth,
    FlowQuery,
    FlowStatistics,
    FlowSummary,
    FlowTimeline,
    Page,
    RecoveryResult,
    TimelineEntry,
)
from flow_engine.models.state import (
    FlowError,
    FlowEvent,
    FlowState,
    StepResult,
    StepState,
)

__all__ = [
    "AutoResumeReport",
    "BatchOperation",
    "BatchResult",
    "Branch",
    "CommandOutcome",
    "CommandResult",
    "Condition",
    "EngineHealth",
    "FlowDefinition",
    "FlowError",
    "FlowEvent",
    "FlowQuery",
    "FlowState",
    "FlowStatistics",
    "FlowSummary",
    "FlowTimeline",
    "Page",
    "PauseRule",
    "RecoveryResult",
    "ResumePolicy",
    "StepDefinition",
    "StepResult",
    "StepState",
    "TimelineEntry",
    "resolve_execution_order",
    "validate_definition",
]
