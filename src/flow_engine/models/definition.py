"""Static flow definitions and execution-order resolution."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flow_engine.enums import PauseReason
from flow_engine.errors import (
    CycleDetectedError,
    DefinitionValidationError,
    UnknownDependencyError,
)


class Condition(BaseModel):
    """Serializable predicate evaluated against a flow's data bag.

    ``predicate`` names an entry in the condition registry; ``key`` and
    ``value`` are its arguments.
    """

    model_config = ConfigDict(frozen=True)

    predicate: str
    key: str | None = None
    value: Any = None

    @field_validator("predicate")
    @classmethod
    def predicate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("predicate is required")
        return v


class Branch(BaseModel):
    """Conditional continuation of a step."""

    model_config = ConfigDict(frozen=True)

    condition: Condition | None = None
    steps: list[str] = []
    is_default: bool = False


class ResumePolicy(BaseModel):
    """When a paused flow may be resumed without an operator."""

    model_config = ConfigDict(frozen=True)

    after_seconds: float | None = Field(default=None, gt=0)
    resume_on_timeout: bool = True
    condition: Condition | None = None


class PauseRule(BaseModel):
    """Pause the flow before a step runs when ``condition`` holds."""

    model_config = ConfigDict(frozen=True)

    condition: Condition
    reason: PauseReason = PauseReason.EXTERNAL_WAIT
    message: str = ""
    resume: ResumePolicy | None = None


class StepDefinition(BaseModel):
    """Static description of one step."""

    name: str
    step_dependencies: list[str] = []
    data_dependencies: dict[str, str] = {}
    output_keys: list[str] | None = None
    max_retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=0.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    timeout: float | None = Field(default=None, gt=0)
    is_critical: bool = True
    is_idempotent: bool = True
    can_run_in_parallel: bool = False
    branches: list[Branch] = []
    condition: Condition | None = None
    pause_rule: PauseRule | None = None

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name is required")
        return v


class FlowDefinition(BaseModel):
    """Named step graph that flows are instantiated from."""

    flow_type: str
    steps: list[StepDefinition]

    @field_validator("flow_type")
    @classmethod
    def flow_type_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("flow_type is required")
        return v

    def step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    @property
    def branch_owners(self) -> dict[str, str]:
        """Map each branch-gated step to the step whose branches name it."""
        owners: dict[str, str] = {}
        for step in self.steps:
            for branch in step.branches:
                for target in branch.steps:
                    owners[target] = step.name
        return owners


def _dependency_map(definition: FlowDefinition) -> dict[str, set[str]]:
    """Explicit step dependencies plus branch owner -> branch target edges."""
    names = {step.name for step in definition.steps}
    deps: dict[str, set[str]] = {step.name: set() for step in definition.steps}

    for step in definition.steps:
        for dep in step.step_dependencies:
            if dep not in names:
                raise UnknownDependencyError(step.name, dep)
            deps[step.name].add(dep)
        for branch in step.branches:
            for target in branch.steps:
                if target not in names:
                    raise UnknownDependencyError(step.name, target)
                deps[target].add(step.name)
        for producer in step.data_dependencies.values():
            if producer not in names:
                raise UnknownDependencyError(step.name, producer)

    return deps


def resolve_execution_order(definition: FlowDefinition) -> list[list[str]]:
    """Resolve the definition into ordered batches of step names.

    Steps in the same batch have all dependencies in earlier batches. A batch
    with more than one member contains only ``can_run_in_parallel`` steps.
    Raises CycleDetectedError or UnknownDependencyError for invalid graphs.
    """
    if definition is None:
        raise ValueError("definition is required")

    deps = _dependency_map(definition)
    order = [step.name for step in definition.steps]
    parallel = {step.name for step in definition.steps if step.can_run_in_parallel}

    resolved: set[str] = set()
    levels: list[list[str]] = []
    while len(resolved) < len(order):
        level = [n for n in order if n not in resolved and deps[n] <= resolved]
        if not level:
            raise CycleDetectedError([n for n in order if n not in resolved])
        levels.append(level)
        resolved.update(level)

    batches: list[list[str]] = []
    for level in levels:
        group = [n for n in level if n in parallel]
        for name in level:
            if name not in parallel or len(group) == 1:
                batches.append([name])
            elif name == group[0]:
                batches.append(group)
    return batches


def validate_definition(definition: FlowDefinition) -> list[list[str]]:
    """Validate a definition once at load time and return its execution plan."""
    if definition is None:
        raise ValueError("definition is required")
    if not definition.steps:
        raise DefinitionValidationError(
            f"Flow {definition.flow_type} must have at least one step"
        )

    seen: set[str] = set()
    for step in definition.steps:
        if step.name in seen:
            raise DefinitionValidationError(
                f"Duplicate step name in flow {definition.flow_type}: {step.name}"
            )
        seen.add(step.name)

    owners: dict[str, str] = {}
    for step in definition.steps:
        defaults = [b for b in step.branches if b.is_default]
        if len(defaults) > 1:
            raise DefinitionValidationError(
                f"Step {step.name} declares more than one default branch"
            )
        for branch in step.branches:
            if branch.condition is None and not branch.is_default:
                raise DefinitionValidationError(
                    f"Step {step.name} has a non-default branch without a condition"
                )
            for target in branch.steps:
                owner = owners.setdefault(target, step.name)
                if owner != step.name:
                    raise DefinitionValidationError(
                        f"Step {target} is gated by branches of both {owner} and {step.name}"
                    )

    plan = resolve_execution_order(definition)

    batch_of = {name: i for i, batch in enumerate(plan) for name in batch}
    for step in definition.steps:
        for key, producer in step.data_dependencies.items():
            if batch_of[producer] >= batch_of[step.name]:
                raise DefinitionValidationError(
                    f"Step {step.name} needs {key} from {producer}, "
                    f"which does not run earlier"
                )
    return plan
