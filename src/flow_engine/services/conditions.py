"""Named predicate registry for branch, skip, pause and resume conditions."""

from typing import Any, Callable, Mapping

from flow_engine.models.definition import Condition

Predicate = Callable[[Mapping[str, Any], Condition], bool]


class UnknownPredicateError(KeyError):
    """Raised when a condition names a predicate that is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown predicate: {name}")


def _exists(data: Mapping[str, Any], cond: Condition) -> bool:
    return cond.key in data


def _truthy(data: Mapping[str, Any], cond: Condition) -> bool:
    return bool(data.get(cond.key))


def _falsy(data: Mapping[str, Any], cond: Condition) -> bool:
    return not data.get(cond.key)


def _equals(data: Mapping[str, Any], cond: Condition) -> bool:
    return cond.key in data and data[cond.key] == cond.value


def _not_equals(data: Mapping[str, Any], cond: Condition) -> bool:
    return data.get(cond.key) != cond.value


def _greater_than(data: Mapping[str, Any], cond: Condition) -> bool:
    value = data.get(cond.key)
    return value is not None and value > cond.value


def _less_than(data: Mapping[str, Any], cond: Condition) -> bool:
    value = data.get(cond.key)
    return value is not None and value < cond.value


def _member_of(data: Mapping[str, Any], cond: Condition) -> bool:
    return cond.key in data and data[cond.key] in (cond.value or ())


BUILTIN_PREDICATES: dict[str, Predicate] = {
    "always": lambda data, cond: True,
    "never": lambda data, cond: False,
    "exists": _exists,
    "truthy": _truthy,
    "falsy": _falsy,
    "equals": _equals,
    "not_equals": _not_equals,
    "greater_than": _greater_than,
    "less_than": _less_than,
    "in": _member_of,
}


class ConditionRegistry:
    """Resolves serializable conditions to predicate functions by name.

    Custom predicates receive the data bag and the condition itself, so
    external checks (e.g. "kyc_document_received") can use ``key``/``value``
    as arguments.
    """

    def __init__(self, predicates: Mapping[str, Predicate] | None = None):
        self._predicates: dict[str, Predicate] = dict(BUILTIN_PREDICATES)
        if predicates:
            for name, fn in predicates.items():
                self.register(name, fn)

    def register(self, name: str, predicate: Predicate) -> None:
        """Register or replace a named predicate."""
        if not name:
            raise ValueError("name is required")
        if predicate is None:
            raise ValueError("predicate is required")
        self._predicates[name] = predicate

    def __contains__(self, name: str) -> bool:
        return name in self._predicates

    def evaluate(self, condition: Condition, data: Mapping[str, Any]) -> bool:
        """Evaluate ``condition`` against ``data``."""
        if condition is None:
            raise ValueError("condition is required")
        try:
            predicate = self._predicates[condition.predicate]
        except KeyError:
            raise UnknownPredicateError(condition.predicate) from None
        return bool(predicate(data, condition))
