"""
State compiler for RuleDB.

Computes `$state` for a record: every state rule registered for the
record's schema whose conditions all hold contributes its flags to the
fields it names ("*" = every field). Contributions are merged per field:

    immutable, required, hidden   logical OR of positive assertions
    enum_subset                   intersection of asserted subsets

Both merges are commutative and associative, so rule registration order
never changes the result. An explicit False is "no opinion" and is weaker
than any True. Fields no matching rule touches are omitted.

CompiledState is ephemeral: it is recomputed on every read and write and
never cached across requests.

Invariants:
    - compute_state performs no I/O; related records come in via Ancestry
    - A rule that can co-hold with another and yields required+hidden,
      or disjoint enum subsets, on one field is rejected at registration
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from ..errors import ImmutableFieldError, RuleConfigError, ValidationError
from ..records import Record
from ..rules.conditions import Condition, Operator, evaluate_all
from ..rules.index import RuleIndex
from ..rules.paths import PathExpr, ResolutionContext, Selector
from ..rules.types import StateRule
from ..schema.registry import SchemaRegistry
from ..schema.types import FieldKind, FieldSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldState:
    """Merged runtime flags of one field."""

    immutable: bool = False
    required: bool = False
    hidden: bool = False
    enum_subset: Optional[frozenset[str]] = None

    def merge(self, other: FieldState) -> FieldState:
        if self.enum_subset is None:
            subset = other.enum_subset
        elif other.enum_subset is None:
            subset = self.enum_subset
        else:
            subset = self.enum_subset & other.enum_subset
        return FieldState(
            immutable=self.immutable or other.immutable,
            required=self.required or other.required,
            hidden=self.hidden or other.hidden,
            enum_subset=subset,
        )

    @property
    def is_default(self) -> bool:
        return not (self.immutable or self.required or self.hidden) and self.enum_subset is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "immutable": self.immutable,
            "required": self.required,
            "hidden": self.hidden,
        }
        if self.enum_subset is not None:
            result["enumSubset"] = sorted(self.enum_subset)
        return result


_DEFAULT = FieldState()


@dataclass(frozen=True)
class CompiledState:
    """`$state` of one record: field name -> merged flags."""

    schema: str
    fields: Mapping[str, FieldState] = field(default_factory=dict)

    def get(self, name: str) -> FieldState:
        return self.fields.get(name, _DEFAULT)

    def immutable_fields(self) -> set[str]:
        return {n for n, s in self.fields.items() if s.immutable}

    def hidden_fields(self) -> set[str]:
        return {n for n, s in self.fields.items() if s.hidden}

    def allowed_values(self, spec: FieldSpec) -> Optional[frozenset[str]]:
        """Values an enum field may take under this state, or None if unrestricted."""
        subset = self.get(spec.name).enum_subset
        if spec.enum_values is None:
            return subset
        declared = frozenset(spec.enum_values)
        return declared if subset is None else declared & subset

    def __bool__(self) -> bool:
        return bool(self.fields)

    def to_dict(self) -> dict[str, Any]:
        return {"fields": {n: s.to_dict() for n, s in self.fields.items()}}


@dataclass(frozen=True)
class Ancestry:
    """Related records supplied by the caller for `$parent`/`$child` paths."""

    ancestors: Sequence[Record] = ()
    descendants: Sequence[Record] = ()


class StateCompiler:
    """Evaluates state rules and merges their effects.

    Example:
        >>> compiler = StateCompiler(registry, index)
        >>> state = compiler.compute_state(item, Ancestry(ancestors=(order,)))
        >>> state.get("quantity").immutable
        True
    """

    def __init__(self, registry: SchemaRegistry, index: RuleIndex) -> None:
        self.registry = registry
        self.index = index

    def compute_state(self, record: Record, ancestry: Optional[Ancestry] = None) -> CompiledState:
        """Compute `$state` for a record."""
        ancestry = ancestry or Ancestry()
        schema = self.registry.require(record.schema)
        ctx = ResolutionContext.for_record(record, ancestry.ancestors, ancestry.descendants)

        merged: Dict[str, FieldState] = {}
        for rule in self.index.state_rules_for(record.schema):
            if not evaluate_all(rule.conditions, ctx):
                continue
            contribution = _effect_state(rule)
            for name in rule.effect.fields_in(schema):
                flags = contribution
                if flags.enum_subset is not None and schema.get_field(name).kind != FieldKind.ENUM:
                    flags = FieldState(flags.immutable, flags.required, flags.hidden)
                merged[name] = merged.get(name, _DEFAULT).merge(flags)

        fields = {
            n: merged[n]
            for n in schema.field_names()
            if n in merged and not merged[n].is_default
        }
        return CompiledState(schema=record.schema, fields=fields)

    def check_write(
        self,
        record: Record,
        updates: Mapping[str, Any],
        state: CompiledState,
        check_immutable: bool = True,
    ) -> None:
        """Check a write against `$state`.

        Args:
            record: Current snapshot (empty for a record being created)
            updates: Field updates
            state: `$state` of the record
            check_immutable: False on create, where no stored value changes

        Raises:
            ImmutableFieldError: If an immutable field would change
            ValidationError: If a required field would be emptied or an
                enum value falls outside the allowed subset
        """
        changed = record.changed_fields(dict(updates))
        blocked = sorted(changed & state.immutable_fields()) if check_immutable else []
        if blocked:
            raise ImmutableFieldError(record.schema, record.id, blocked)

        schema = self.registry.require(record.schema)
        after = record.with_updates(dict(updates))
        errors: list[str] = []
        for name, fs in state.fields.items():
            if fs.required and after.get(name) is None:
                errors.append(f"Field '{name}' is required in the current state")
        for name in sorted(changed):
            spec = schema.get_field(name)
            if spec is None or updates[name] is None:
                continue
            if state.get(name).enum_subset is None:
                continue
            allowed = state.allowed_values(spec)
            if updates[name] not in allowed:
                errors.append(
                    f"Field '{name}' must be one of {sorted(allowed)} in the current state, "
                    f"got '{updates[name]}'"
                )
        if errors:
            raise ValidationError(
                f"State check failed for {record.schema}:{record.id}: {'; '.join(errors)}",
                errors=errors,
                layer="state",
            )

    # --- registration-time checks -----------------------------------------

    def check_rule(self, rule: StateRule, reject_contradictions: bool = True) -> None:
        """Validate a state rule against the schema and the rules already indexed.

        Raises:
            RuleConfigError: If the effect is inconsistent or contradicts
                another rule that can hold at the same time
        """
        schema = self.registry.require(rule.schema)
        effect = rule.effect
        if effect.enum_subset is not None:
            for name in effect.fields_in(schema):
                spec = schema.get_field(name)
                if spec.kind != FieldKind.ENUM:
                    if "*" in effect.on_fields:
                        continue
                    raise RuleConfigError(f"enum_subset on non-enum field '{name}'", rule)
                extra = effect.enum_subset - frozenset(spec.enum_values or ())
                if extra:
                    raise RuleConfigError(
                        f"enum_subset values {sorted(extra)} not declared on '{name}'", rule
                    )

        if not reject_contradictions:
            return
        if effect.required and effect.hidden:
            raise RuleConfigError(f"State rule '{rule.label}' marks fields required and hidden", rule)
        for other in self.index.state_rules_for(rule.schema):
            conflict = _conflict(rule, other, schema.field_names())
            if conflict and not mutually_exclusive(rule.conditions, other.conditions):
                raise RuleConfigError(
                    f"State rule '{rule.label}' contradicts '{other.label}' on field "
                    f"'{conflict}' and both can hold at once",
                    rule,
                )


def _effect_state(rule: StateRule) -> FieldState:
    e = rule.effect
    return FieldState(
        immutable=e.immutable, required=e.required, hidden=e.hidden, enum_subset=e.enum_subset
    )


def _conflict(a: StateRule, b: StateRule, field_names: Iterable[str]) -> Optional[str]:
    ea, eb = a.effect, b.effect
    for name in field_names:
        if not (ea.covers(name) and eb.covers(name)):
            continue
        if (ea.required and eb.hidden) or (ea.hidden and eb.required):
            return name
        if ea.enum_subset is not None and eb.enum_subset is not None:
            if not ea.enum_subset & eb.enum_subset:
                return name
    return None


def _path_key(p: PathExpr) -> tuple:
    return (p.selector, p.index, p.schema, p.tail)


def _admitted(cond: Condition) -> Optional[tuple[bool, frozenset]]:
    """(True, values) if the condition admits only `values`,
    (False, values) if it rejects exactly `values`, None otherwise."""
    if isinstance(cond.value, PathExpr):
        return None
    value = cond.value
    members = [value] if isinstance(value, str) else value
    try:
        if cond.operator == Operator.EQ:
            return True, frozenset([value])
        if cond.operator == Operator.IN:
            return True, frozenset(members)
        if cond.operator == Operator.NEQ:
            return False, frozenset([value])
        if cond.operator == Operator.NOT_IN:
            return False, frozenset(members)
    except TypeError:
        return None
    return None


def mutually_exclusive(a: Sequence[Condition], b: Sequence[Condition]) -> bool:
    """Whether two conjunctions provably cannot hold at the same time.

    Only equality/membership conditions on the same path are compared;
    anything else is assumed to possibly co-hold.
    """
    for ca in a:
        for cb in b:
            if _path_key(ca.path) != _path_key(cb.path):
                continue
            # $modifiedFields membership is set intersection, not equality
            if ca.path.selector == Selector.MODIFIED_FIELDS:
                continue
            ra, rb = _admitted(ca), _admitted(cb)
            if ra is None or rb is None:
                continue
            (pos_a, vals_a), (pos_b, vals_b) = ra, rb
            if pos_a and pos_b and not vals_a & vals_b:
                return True
            if pos_a and not pos_b and vals_a <= vals_b:
                return True
            if pos_b and not pos_a and vals_b <= vals_a:
                return True
    return False
