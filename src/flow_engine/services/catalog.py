"""Registry of flow definitions and their step implementations."""

import logging
import threading
from typing import Any, Callable, Mapping, Protocol, Union

from flow_engine.errors import DefinitionValidationError, UnknownFlowTypeError
from flow_engine.models.definition import Condition, FlowDefinition, validate_definition
from flow_engine.models.state import StepResult
from flow_engine.services.conditions import ConditionRegistry

logger = logging.getLogger(__name__)


class StepHandler(Protocol):
    """Business logic of a step. Raising counts as a step failure."""

    def execute(self, data: dict[str, Any]) -> StepResult: ...


Handler = Union[StepHandler, Callable[[dict[str, Any]], StepResult]]


class RegisteredFlow:
    """A validated definition, its execution plan and step handlers."""

    def __init__(
        self,
        definition: FlowDefinition,
        plan: list[list[str]],
        handlers: dict[str, Handler],
    ):
        self.definition = definition
        self.plan = plan
        self._handlers = handlers

    @property
    def flow_type(self) -> str:
        return self.definition.flow_type

    def invoke(self, step_name: str, data: dict[str, Any]) -> StepResult:
        handler = self._handlers[step_name]
        execute = getattr(handler, "execute", handler)
        return execute(data)


class FlowCatalog:
    """Holds the definitions flows can be instantiated from.

    Definitions are validated once, at registration.
    """

    def __init__(self, conditions: ConditionRegistry | None = None):
        self._conditions = conditions or ConditionRegistry()
        self._flows: dict[str, RegisteredFlow] = {}
        self._lock = threading.Lock()

    @property
    def conditions(self) -> ConditionRegistry:
        return self._conditions

    def _check_condition(self, step_name: str, condition: Condition | None) -> None:
        if condition is not None and condition.predicate not in self._conditions:
            raise DefinitionValidationError(
                f"Step {step_name} uses unknown predicate: {condition.predicate}"
            )

    def register(
        self,
        definition: FlowDefinition,
        handlers: Mapping[str, Handler],
    ) -> RegisteredFlow:
        """Validate and register a definition with one handler per step."""
        if definition is None:
            raise ValueError("definition is required")
        if handlers is None:
            raise ValueError("handlers is required")

        plan = validate_definition(definition)

        for step in definition.steps:
            if step.name not in handlers:
                raise DefinitionValidationError(
                    f"No handler registered for step {step.name} of {definition.flow_type}"
                )
            self._check_condition(step.name, step.condition)
            for branch in step.branches:
                self._check_condition(step.name, branch.condition)
            if step.pause_rule is not None:
                self._check_condition(step.name, step.pause_rule.condition)
                if step.pause_rule.resume is not None:
                    self._check_condition(step.name, step.pause_rule.resume.condition)

        extra = set(handlers) - {step.name for step in definition.steps}
        if extra:
            raise DefinitionValidationError(
                f"Handlers given for undefined steps: {', '.join(sorted(extra))}"
            )

        registered = RegisteredFlow(definition, plan, dict(handlers))
        with self._lock:
            self._flows[definition.flow_type] = registered

        logger.info(
            f"Registered flow type {definition.flow_type} "
            f"({len(definition.steps)} steps, {len(plan)} batches)"
        )
        return registered

    def get(self, flow_type: str) -> RegisteredFlow:
        if not flow_type:
            raise ValueError("flow_type is required")
        with self._lock:
            registered = self._flows.get(flow_type)
        if registered is None:
            raise UnknownFlowTypeError(flow_type)
        return registered

    def __contains__(self, flow_type: str) -> bool:
        return flow_type in self._flows

    def flow_types(self) -> list[str]:
        with self._lock:
            return sorted(self._flows)
