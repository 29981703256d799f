"""
Rule definitions for RuleDB.

This module defines the declarative rule objects the engine evaluates:
- ReactionRule: (schema, event kind, conditions) -> action on a scope
- StateRule: conditions -> flags on fields ($state)
- AugmentationRule: cross-schema shape for create/view/edit

Actions are a tagged variant: SetAction carries target field -> value
expression, CustomAction carries only the name of a function resolved
through the CustomActionRegistry at dispatch time.

Invariants:
    - Rules are immutable once constructed
    - Paths are parsed at construction, never per evaluation
    - StateEffect flags are positive assertions; False means no opinion
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ..errors import RuleConfigError
from ..records import EventKind
from ..schema.types import Cardinality, SchemaDef
from .conditions import Condition, parse_conditions
from .paths import PathExpr, is_path, parse_path


class Scope(Enum):
    """Which related records a reaction's action targets."""

    SELF = "self"
    PARENT = "parent"
    CHILD = "child"


class Target(Enum):
    """Operation an augmentation rule shapes."""

    TO_CREATE = "toCreate"
    TO_VIEW = "toView"
    TO_EDIT = "toEdit"


class Context(Enum):
    """Whether an operation runs on its own or nested under a parent."""

    SLF = "slf"
    NESTED = "nested"


def _enum(cls: type[Enum], value: Any) -> Any:
    if isinstance(value, cls):
        return value
    try:
        return cls(value)
    except ValueError:
        valid = [m.value for m in cls]
        raise RuleConfigError(f"Invalid {cls.__name__} '{value}'. Valid values: {valid}")


# --- Actions -----------------------------------------------------------------


@dataclass(frozen=True)
class SetAction:
    """Write values to fields of the scope-resolved target records.

    Attributes:
        target_fields: Field name -> literal value or PathExpr
    """

    target_fields: tuple[tuple[str, Any], ...]

    @classmethod
    def of(cls, target_fields: dict[str, Any]) -> SetAction:
        if not target_fields:
            raise RuleConfigError("Set action needs at least one target field")
        return cls(
            tuple(
                (name, parse_path(value) if is_path(value) else value)
                for name, value in target_fields.items()
            )
        )

    def paths(self) -> list[PathExpr]:
        return [v for _, v in self.target_fields if isinstance(v, PathExpr)]


@dataclass(frozen=True)
class CustomAction:
    """Invoke a function registered under `function_name`."""

    function_name: str


Action = Union[SetAction, CustomAction]


def parse_action(spec: Any) -> Action:
    """Build an action from a definition.

    Accepted forms:
        {"set": {"status": "$eventObject.status"}}
        {"custom": "check_order_completion"}
    """
    if isinstance(spec, (SetAction, CustomAction)):
        return spec
    if isinstance(spec, dict) and "set" in spec:
        return SetAction.of(spec["set"])
    if isinstance(spec, dict) and "custom" in spec:
        return CustomAction(spec["custom"])
    raise RuleConfigError(f"Invalid action definition: {spec!r}")


# --- Reaction rules ----------------------------------------------------------


@dataclass(frozen=True)
class ReactionRule:
    """Declarative trigger paired with an action.

    Attributes:
        schema: Schema whose mutations trigger the rule
        event_kind: Which mutation kind triggers the rule
        scope: Which records the action targets
        conditions: Conjunction evaluated before any data access
        action: SetAction or CustomAction
        name: Label used in logs
        target_schema: Restrict parent/child scope to this schema
    """

    schema: str
    event_kind: EventKind
    action: Action
    scope: Scope = Scope.SELF
    conditions: tuple[Condition, ...] = ()
    name: str = ""
    target_schema: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReactionRule:
        return cls(
            schema=data["schema"],
            event_kind=_enum(EventKind, data.get("event", data.get("event_kind"))),
            action=parse_action(data["action"]),
            scope=_enum(Scope, data.get("scope", "self")),
            conditions=parse_conditions(data.get("conditions")),
            name=data.get("name", ""),
            target_schema=data.get("target_schema"),
        )

    def paths(self) -> list[PathExpr]:
        result = [p for c in self.conditions for p in c.paths()]
        if isinstance(self.action, SetAction):
            result.extend(self.action.paths())
        return result

    @property
    def label(self) -> str:
        return self.name or f"{self.schema}.{self.event_kind.value}->{self.scope.value}"


# --- State rules -------------------------------------------------------------


@dataclass(frozen=True)
class StateEffect:
    """Flags a matching state rule asserts on its fields.

    Attributes:
        on_fields: Field names, or "*" for every field of the schema
        immutable: Field cannot be written
        required: Field must hold a value
        hidden: Field is omitted from views
        enum_subset: Allowed values narrowed to this subset
    """

    on_fields: tuple[str, ...]
    immutable: bool = False
    required: bool = False
    hidden: bool = False
    enum_subset: frozenset[str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateEffect:
        """Build an effect from flat flags or an `{onFields, flags: {...}}` dict."""
        on_fields = data.get("on_fields", data.get("onFields", "*"))
        if isinstance(on_fields, str):
            on_fields = (on_fields,)
        flags = {**data, **(data.get("flags") or {})}
        subset = flags.get("enum_subset", flags.get("enumSubset"))
        return cls(
            on_fields=tuple(on_fields),
            immutable=bool(flags.get("immutable", False)),
            required=bool(flags.get("required", False)),
            hidden=bool(flags.get("hidden", False)),
            enum_subset=frozenset(subset) if subset is not None else None,
        )

    def covers(self, field_name: str) -> bool:
        return "*" in self.on_fields or field_name in self.on_fields

    def fields_in(self, schema: SchemaDef) -> list[str]:
        if "*" in self.on_fields:
            return schema.field_names()
        return [f for f in self.on_fields if schema.get_field(f) is not None]

    @property
    def asserts_anything(self) -> bool:
        return self.immutable or self.required or self.hidden or self.enum_subset is not None


@dataclass(frozen=True)
class StateRule:
    """Condition/effect pair producing runtime field flags."""

    schema: str
    effect: StateEffect
    conditions: tuple[Condition, ...] = ()
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRule:
        effect = data.get("effect") or {
            k: v for k, v in data.items() if k not in ("schema", "conditions", "name")
        }
        return cls(
            schema=data["schema"],
            effect=StateEffect.from_dict(effect),
            conditions=parse_conditions(data.get("conditions")),
            name=data.get("name", ""),
        )

    def paths(self) -> list[PathExpr]:
        return [p for c in self.conditions for p in c.paths()]

    @property
    def label(self) -> str:
        return self.name or f"{self.schema}:state{list(self.effect.on_fields)}"


# --- Augmentation rules ------------------------------------------------------


class SelectMode(Enum):
    ALL = "all"
    EXCLUDE = "exclude"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class Selection:
    """Field selection: '*', '!field' exclusions, or an explicit list."""

    mode: SelectMode = SelectMode.ALL
    names: frozenset[str] = frozenset()

    @classmethod
    def parse(cls, spec: Any) -> Selection:
        if spec is None or spec == "*":
            return cls()
        if isinstance(spec, Selection):
            return spec
        items = [spec] if isinstance(spec, str) else list(spec)
        if not items or items == ["*"]:
            return cls()
        negated = [i for i in items if i.startswith("!")]
        plain = [i for i in items if not i.startswith("!") and i != "*"]
        if negated and plain:
            raise RuleConfigError(f"Cannot mix '!field' exclusions with explicit fields: {spec!r}")
        if negated:
            return cls(SelectMode.EXCLUDE, frozenset(i[1:] for i in negated))
        return cls(SelectMode.EXPLICIT, frozenset(plain))

    def apply(self, schema: SchemaDef) -> tuple[str, ...]:
        """Selected field names in schema declaration order."""
        names = schema.field_names()
        if self.mode == SelectMode.ALL:
            return tuple(names)
        if self.mode == SelectMode.EXCLUDE:
            return tuple(n for n in names if n not in self.names)
        return tuple(n for n in names if n in self.names)


@dataclass(frozen=True)
class ChildRequirement:
    """Referenced child schema included in a combined contract.

    Attributes:
        schema: Child schema name (must refer to the parent)
        alias: Payload key holding the child payload(s)
        cardinality: ONE (a dict) or MANY (a list)
        min_items: Minimum number of children (MANY)
        max_items: Maximum number of children (MANY)
        required_fields: Fields every child payload must carry
        required: Whether the alias must be present at all
    """

    schema: str
    alias: str
    cardinality: Cardinality = Cardinality.MANY
    min_items: int = 0
    max_items: int | None = None
    required_fields: tuple[str, ...] = ()
    required: bool = False

    def __post_init__(self) -> None:
        if self.min_items < 0:
            raise RuleConfigError(f"minItems must be >= 0 for '{self.alias}'")
        if self.max_items is not None and self.max_items < self.min_items:
            raise RuleConfigError(f"maxItems < minItems for '{self.alias}'")

    @property
    def mandatory(self) -> bool:
        return self.required or self.min_items > 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChildRequirement:
        schema = data.get("schema", data.get("target"))
        return cls(
            schema=schema,
            alias=data.get("alias", schema),
            cardinality=_enum(Cardinality, data.get("cardinality", "many")),
            min_items=data.get("min_items", data.get("minItems", 0)),
            max_items=data.get("max_items", data.get("maxItems")),
            required_fields=tuple(data.get("required_fields", data.get("requiredFields", ()))),
            required=bool(data.get("required", False)),
        )


@dataclass(frozen=True)
class AugmentationRule:
    """Shape of one (schema, target, context) operation."""

    schema: str
    target: Target
    context: Context = Context.SLF
    select: Selection = field(default_factory=Selection)
    refers: tuple[ChildRequirement, ...] = ()

    def __post_init__(self) -> None:
        aliases = [r.alias for r in self.refers]
        if len(aliases) != len(set(aliases)):
            raise RuleConfigError(f"Duplicate child alias in augmentation of '{self.schema}'")

    @property
    def key(self) -> tuple[str, Target, Context]:
        return (self.schema, self.target, self.context)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AugmentationRule:
        return cls(
            schema=data["schema"],
            target=_enum(Target, data["target"]),
            context=_enum(Context, data.get("context", "slf")),
            select=Selection.parse(data.get("select", "*")),
            refers=tuple(ChildRequirement.from_dict(r) for r in data.get("refers", ())),
        )
