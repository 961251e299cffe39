"""Exception hierarchy for the flow engine."""

from flow_engine.enums import ErrorKind, FlowStatus


class FlowEngineError(Exception):
    """Base class for all flow engine errors."""

    kind: ErrorKind = ErrorKind.STEP_EXECUTION_ERROR


class DefinitionValidationError(FlowEngineError):
    """Raised when a flow definition is malformed."""

    kind = ErrorKind.VALIDATION_ERROR


class CycleDetectedError(DefinitionValidationError):
    """Raised when step dependencies do not form a DAG."""

    kind = ErrorKind.CYCLE_DETECTED

    def __init__(self, steps: list[str]):
        self.steps = steps
        super().__init__(f"Dependency cycle detected among steps: {', '.join(steps)}")


class UnknownDependencyError(DefinitionValidationError):
    """Raised when a step references a step that does not exist."""

    kind = ErrorKind.UNKNOWN_DEPENDENCY

    def __init__(self, step_name: str, dependency: str):
        self.step_name = step_name
        self.dependency = dependency
        super().__init__(f"Step {step_name} references unknown step: {dependency}")


class UnknownFlowTypeError(FlowEngineError):
    """Raised when no definition is registered for a flow type."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, flow_type: str):
        self.flow_type = flow_type
        super().__init__(f"Unknown flow type: {flow_type}")


class FlowNotFoundError(FlowEngineError):
    """Raised when flow is not found."""

    kind = ErrorKind.FLOW_NOT_FOUND

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow not found: {flow_id}")


class ConcurrencyConflictError(FlowEngineError):
    """Raised when a save targets a stale version of a flow."""

    kind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, flow_id: str, expected: int, actual: int | None):
        self.flow_id = flow_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrency conflict on flow {flow_id}: "
            f"expected version {expected}, found {actual}"
        )


class InvalidOperationError(FlowEngineError):
    """Raised when an operation is not allowed in the flow's current status."""

    kind = ErrorKind.INVALID_OPERATION

    def __init__(self, flow_id: str, operation: str, status: FlowStatus, detail: str = ""):
        self.flow_id = flow_id
        self.operation = operation
        self.status = status
        message = f"Cannot {operation} flow {flow_id} in status {status.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StepTimedOutError(FlowEngineError):
    """Raised when a step exceeds its timeout."""

    kind = ErrorKind.STEP_TIMED_OUT

    def __init__(self, step_name: str, timeout: float):
        self.step_name = step_name
        self.timeout = timeout
        super().__init__(f"Step {step_name} timed out after {timeout}s")
