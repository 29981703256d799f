"""
Path expressions and the path resolver.

Rules reference values in the record graph with a small expression
language, parsed once at registration time into a PathExpr:

    $eventObject.status          field of the mutated/materialized record
    status                       shorthand for $eventObject.status
    $modifiedFields              set of changed field names
    $parent.status               field of the nearest ancestor
    $parent(2).status            field of the 2nd ancestor (1-based)
    $parent('Order').status      nearest ancestor of schema Order
    $parent('Order', 2).status   2nd ancestor of schema Order
    $child(...)                  same forms over descendants

Ancestors and descendants are ordered breadth-first over refer fields in
declaration order. The resolver performs no I/O: related records must
already be present in the ResolutionContext. A hop that cannot be
satisfied yields NOT_FOUND, which every operator treats as a non-match.

Invariants:
    - parse_path is pure and deterministic
    - resolve never raises for missing data; it returns NOT_FOUND
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Sequence

from ..errors import RuleConfigError
from ..records import Event, Record


class _NotFound:
    """Sentinel for unresolvable paths."""

    _instance: _NotFound | None = None

    def __new__(cls) -> _NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND: Any = _NotFound()


class Selector(Enum):
    """Leading selector of a path expression."""

    EVENT_OBJECT = "eventObject"
    MODIFIED_FIELDS = "modifiedFields"
    PARENT = "parent"
    CHILD = "child"


_PATH_RE = re.compile(
    r"^\$(?P<selector>eventObject|modifiedFields|parent|child)"
    r"(?:\((?P<args>[^)]*)\))?"
    r"(?:\.(?P<tail>.+))?$"
)
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_QUOTED_RE = re.compile(r"""^(['"])(?P<name>[^'"]+)\1$""")


@dataclass(frozen=True)
class PathExpr:
    """Parsed path expression.

    Attributes:
        selector: Which part of the context the path starts from
        index: 1-based position among matching ancestors/descendants
        schema: Restrict ancestors/descendants to this schema
        tail: Field name followed by nested keys
        source: Original expression text
    """

    selector: Selector
    index: int = 1
    schema: str | None = None
    tail: tuple[str, ...] = ()
    source: str = ""

    @property
    def field(self) -> str | None:
        return self.tail[0] if self.tail else None

    @property
    def is_relational(self) -> bool:
        """Whether resolving this path needs related records."""
        return self.selector in (Selector.PARENT, Selector.CHILD)

    @property
    def depth(self) -> int | None:
        """Minimum traversal depth needed, or None when unbounded.

        A schema-restricted hop can sit at any depth, so it needs the
        full ancestry/descendant list.
        """
        if not self.is_relational:
            return 0
        return None if self.schema else self.index

    def __str__(self) -> str:
        return self.source or self.selector.value


def is_path(value: Any) -> bool:
    """Whether a rule value is a path expression rather than a literal."""
    return isinstance(value, str) and value.startswith("$")


@lru_cache(maxsize=1024)
def parse_path(expression: str) -> PathExpr:
    """Parse a path expression.

    Raises:
        RuleConfigError: If the expression does not follow the grammar
    """
    text = expression.strip()
    if not text:
        raise RuleConfigError("Empty path expression")

    if not text.startswith("$"):
        tail = _split_tail(text, expression)
        return PathExpr(Selector.EVENT_OBJECT, tail=tail, source=expression)

    match = _PATH_RE.match(text)
    if not match:
        raise RuleConfigError(f"Invalid path expression '{expression}'")

    selector = Selector(match.group("selector"))
    args = match.group("args")
    tail = _split_tail(match.group("tail"), expression) if match.group("tail") else ()

    if selector in (Selector.EVENT_OBJECT, Selector.MODIFIED_FIELDS) and args is not None:
        raise RuleConfigError(f"${selector.value} takes no arguments in '{expression}'")
    if selector == Selector.MODIFIED_FIELDS and tail:
        raise RuleConfigError(f"$modifiedFields cannot be followed by a field in '{expression}'")

    index, schema = 1, None
    if args is not None and args.strip():
        index, schema = _parse_args(args, expression)

    return PathExpr(selector, index=index, schema=schema, tail=tail, source=expression)


def _split_tail(tail: str, expression: str) -> tuple[str, ...]:
    parts = tuple(tail.split("."))
    for part in parts:
        if not _FIELD_RE.match(part):
            raise RuleConfigError(f"Invalid field name '{part}' in '{expression}'")
    return parts


def _parse_args(args: str, expression: str) -> tuple[int, str | None]:
    tokens = [t.strip() for t in args.split(",")]
    schema = None
    quoted = _QUOTED_RE.match(tokens[0])
    if quoted:
        schema = quoted.group("name")
        tokens = tokens[1:]
    if len(tokens) > 1:
        raise RuleConfigError(f"Too many arguments in '{expression}'")
    index = 1
    if tokens:
        try:
            index = int(tokens[0])
        except ValueError:
            raise RuleConfigError(f"Invalid index '{tokens[0]}' in '{expression}'")
    if index < 1:
        raise RuleConfigError(f"Index must be >= 1 in '{expression}'")
    return index, schema


@dataclass(frozen=True)
class ResolutionContext:
    """Everything a path can resolve against, already loaded.

    Attributes:
        event_object: The record being evaluated
        modified_fields: Changed field names (empty outside modify events)
        ancestors: Ancestors, nearest first
        descendants: Descendants in traversal order
    """

    event_object: Record | None
    modified_fields: frozenset[str] = frozenset()
    ancestors: Sequence[Record] = ()
    descendants: Sequence[Record] = ()

    @classmethod
    def from_event(cls, event: Event) -> ResolutionContext:
        return cls(
            event_object=event.event_object,
            modified_fields=event.modified_fields,
            ancestors=event.ancestry,
            descendants=event.descendants,
        )

    @classmethod
    def for_record(
        cls,
        record: Record,
        ancestors: Sequence[Record] = (),
        descendants: Sequence[Record] = (),
    ) -> ResolutionContext:
        return cls(event_object=record, ancestors=ancestors, descendants=descendants)


def resolve(expr: PathExpr | str, ctx: ResolutionContext) -> Any:
    """Resolve a path expression against a context.

    Returns:
        The resolved value, or NOT_FOUND
    """
    if isinstance(expr, str):
        expr = parse_path(expr)

    if expr.selector == Selector.MODIFIED_FIELDS:
        return frozenset(ctx.modified_fields)

    if expr.selector == Selector.EVENT_OBJECT:
        record = ctx.event_object
    else:
        pool = ctx.ancestors if expr.selector == Selector.PARENT else ctx.descendants
        record = _nth(pool, expr.index, expr.schema)

    if record is None:
        return NOT_FOUND
    if not expr.tail:
        return record
    return _walk(record, expr.tail)


def _nth(pool: Sequence[Record], index: int, schema: str | None) -> Record | None:
    seen = 0
    for record in pool:
        if schema is not None and record.schema != schema:
            continue
        seen += 1
        if seen == index:
            return record
    return None


def _walk(record: Record, tail: tuple[str, ...]) -> Any:
    value = record.get(tail[0])
    for key in tail[1:]:
        if not isinstance(value, dict) or key not in value:
            return NOT_FOUND
        value = value[key]
    return value
