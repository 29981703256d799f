"""
Condition evaluator.

A condition is (path, operator, value). Conditions are evaluated against
a ResolutionContext and always produce a boolean:
- NOT_FOUND on either side makes the condition False
- in/notIn test membership; when the resolved value is itself a set
  (as for $modifiedFields) they test for a non-empty intersection
- ordering operators on incomparable values are False

A condition list is a conjunction. Nested lists are flattened, so a list
of condition lists is also evaluated as AND.

Invariants:
    - evaluate() is pure and performs no I/O
    - Paths and path-valued operands are parsed at construction time
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

from ..errors import RuleConfigError
from .paths import NOT_FOUND, PathExpr, ResolutionContext, is_path, parse_path, resolve


class Operator(Enum):
    """Supported condition operators."""

    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NOT_IN = "notIn"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"

    @classmethod
    def from_str(cls, value: str) -> Operator:
        for op in cls:
            if op.value == value:
                return op
        valid = [o.value for o in cls]
        raise RuleConfigError(f"Invalid operator '{value}'. Valid operators: {valid}")

    @property
    def is_membership(self) -> bool:
        return self in (Operator.IN, Operator.NOT_IN)


def _as_set(value: Any) -> frozenset:
    if isinstance(value, (set, frozenset, list, tuple)):
        return frozenset(value)
    return frozenset([value])


def _membership(actual: Any, expected: Any) -> bool:
    try:
        pool = _as_set(expected)
        if isinstance(actual, (set, frozenset)):
            return bool(actual & pool)
        return actual in pool
    except TypeError:
        return False


def _compare(op: Operator, actual: Any, expected: Any) -> bool:
    if op == Operator.EQ:
        return actual == expected
    if op == Operator.NEQ:
        return actual != expected
    if op == Operator.IN:
        return _membership(actual, expected)
    if op == Operator.NOT_IN:
        return not _membership(actual, expected)
    if actual is None or expected is None:
        return False
    try:
        if op == Operator.LT:
            return actual < expected
        if op == Operator.LTE:
            return actual <= expected
        if op == Operator.GT:
            return actual > expected
        return actual >= expected
    except TypeError:
        return False


@dataclass(frozen=True)
class Condition:
    """A single (path, operator, value) condition.

    Attributes:
        path: Parsed left-hand path
        operator: Comparison operator
        value: Literal operand, or a PathExpr resolved at evaluation time
    """

    path: PathExpr
    operator: Operator
    value: Any = None

    @classmethod
    def parse(cls, spec: Any) -> Condition:
        """Build a condition from a tuple/list or dict definition.

        Accepted forms:
            ("status", "in", ["in_process", "completed"])
            {"path": "$parent.status", "op": "eq", "value": "completed"}

        Raises:
            RuleConfigError: If the definition is malformed
        """
        if isinstance(spec, Condition):
            return spec
        if isinstance(spec, dict):
            path = spec.get("path", spec.get("field"))
            op = spec.get("op", spec.get("operator", "eq"))
            value = spec.get("value")
        elif isinstance(spec, (tuple, list)) and len(spec) == 3:
            path, op, value = spec
        else:
            raise RuleConfigError(f"Invalid condition definition: {spec!r}")

        if not isinstance(path, str):
            raise RuleConfigError(f"Condition path must be a string: {spec!r}")
        operator = op if isinstance(op, Operator) else Operator.from_str(op)
        if operator.is_membership and not isinstance(value, (list, tuple, set, frozenset, str)):
            raise RuleConfigError(f"Operator '{operator.value}' needs a collection: {spec!r}")
        if is_path(value):
            value = parse_path(value)
        elif operator.is_membership and isinstance(value, (list, tuple, set)):
            value = frozenset(value)
        return cls(path=parse_path(path), operator=operator, value=value)

    def paths(self) -> list[PathExpr]:
        """All paths this condition reads."""
        if isinstance(self.value, PathExpr):
            return [self.path, self.value]
        return [self.path]

    def evaluate(self, ctx: ResolutionContext) -> bool:
        actual = resolve(self.path, ctx)
        if actual is NOT_FOUND:
            return False
        expected = self.value
        if isinstance(expected, PathExpr):
            expected = resolve(expected, ctx)
            if expected is NOT_FOUND:
                return False
        return _compare(self.operator, actual, expected)

    def __str__(self) -> str:
        return f"{self.path} {self.operator.value} {self.value!r}"


def parse_conditions(specs: Iterable[Any] | None) -> tuple[Condition, ...]:
    """Parse a condition list, flattening nested lists into one conjunction."""
    result: list[Condition] = []
    for spec in specs or ():
        if isinstance(spec, list) and spec and not _looks_like_triple(spec):
            result.extend(parse_conditions(spec))
        else:
            result.append(Condition.parse(spec))
    return tuple(result)


def _looks_like_triple(spec: list) -> bool:
    return len(spec) == 3 and isinstance(spec[0], str) and isinstance(spec[1], (str, Operator))


def evaluate_all(conditions: Sequence[Condition], ctx: ResolutionContext) -> bool:
    """Conjunction of all conditions; an empty list is True."""
    return all(c.evaluate(ctx) for c in conditions)
