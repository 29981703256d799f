"""
Rule Index for RuleDB.

Stores reaction rules keyed by (schema, event kind) and state rules keyed
by schema, for O(1) candidate lookup during dispatch and materialization.
Rules are validated against the schema registry when they are added:
- every schema named by the rule or its paths must be registered
- set-action target fields must exist on the target schema(s)
- state effects may only name declared fields

The index also records how far each rule set reaches into the record
graph ($parent/$child hops), so callers load related records only when a
candidate rule actually needs them.

Invariants:
    - Rules keep registration order within a key
    - The index is written only before freeze and read-only afterwards
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import RegistryFrozenError, RuleConfigError
from ..records import EventKind
from ..schema.registry import SchemaRegistry
from .paths import PathExpr, Selector
from .types import CustomAction, ReactionRule, Scope, SetAction, StateRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reach:
    """How many ancestor/descendant hops a rule set needs.

    0 means none; None means the full traversal (schema-restricted hops).
    """

    ancestors: Optional[int] = 0
    descendants: Optional[int] = 0

    @property
    def any(self) -> bool:
        return self.ancestors != 0 or self.descendants != 0

    def merge(self, other: Reach) -> Reach:
        return Reach(_max(self.ancestors, other.ancestors), _max(self.descendants, other.descendants))

    @classmethod
    def of(cls, paths: Iterable[PathExpr]) -> Reach:
        reach = cls()
        for p in paths:
            if p.selector == Selector.PARENT:
                reach = reach.merge(cls(ancestors=p.depth))
            elif p.selector == Selector.CHILD:
                reach = reach.merge(cls(descendants=p.depth))
        return reach


def _max(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None or b is None:
        return None
    return max(a, b)


class RuleIndex:
    """Registry-validated index of reaction and state rules.

    Example:
        >>> index = RuleIndex(registry)
        >>> index.add_reaction(rule)
        >>> index.reactions_for("OrderItem", EventKind.MODIFIED)
        [ReactionRule(...)]
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry
        self._reactions: Dict[Tuple[str, EventKind], List[ReactionRule]] = defaultdict(list)
        self._state: Dict[str, List[StateRule]] = defaultdict(list)
        self._reaction_reach: Dict[Tuple[str, EventKind], Reach] = {}
        self._state_reach: Dict[str, Reach] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True
        logger.info(
            f"Rule index frozen with {sum(len(v) for v in self._reactions.values())} reaction "
            f"rules, {sum(len(v) for v in self._state.values())} state rules"
        )

    def _check_writable(self, label: str) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot add rule '{label}': rule index is frozen")

    # --- reactions ---------------------------------------------------------

    def add_reaction(self, rule: ReactionRule) -> None:
        """Add a reaction rule.

        Raises:
            RegistryFrozenError: If the index is frozen
            RuleConfigError: If the rule references unknown schemas or fields
        """
        with self._lock:
            self._check_writable(rule.label)
            self._validate_reaction(rule)
            key = (rule.schema, rule.event_kind)
            self._reactions[key].append(rule)
            self._reaction_reach[key] = self._reaction_reach.get(key, Reach()).merge(
                Reach.of(rule.paths())
            )
        logger.debug(f"Added reaction rule: {rule.label}")

    def reactions_for(self, schema: str, kind: EventKind) -> List[ReactionRule]:
        """Candidate reaction rules for an event, in registration order."""
        return self._reactions.get((schema, kind), [])

    def reaction_reach(self, schema: str, kind: EventKind) -> Reach:
        """Hops needed to evaluate the candidates' conditions and set values."""
        return self._reaction_reach.get((schema, kind), Reach())

    def custom_action_names(self) -> set[str]:
        return {
            r.action.function_name
            for rules in self._reactions.values()
            for r in rules
            if isinstance(r.action, CustomAction)
        }

    def _validate_reaction(self, rule: ReactionRule) -> None:
        schema = self._require_schema(rule.schema, rule)
        self._validate_paths(rule.paths(), rule)
        if rule.target_schema and rule.target_schema not in self.registry:
            raise RuleConfigError(f"Unknown target schema '{rule.target_schema}'", rule)

        targets = self.target_schemas(rule)
        if rule.scope != Scope.SELF and not targets:
            raise RuleConfigError(
                f"Schema '{schema.name}' has no {rule.scope.value} schema to target", rule
            )
        if isinstance(rule.action, SetAction):
            for name, _ in rule.action.target_fields:
                if not any(self.registry.require(t).get_field(name) for t in targets):
                    raise RuleConfigError(
                        f"Target field '{name}' not declared on {sorted(targets)}", rule
                    )

    def target_schemas(self, rule: ReactionRule) -> List[str]:
        """Schema names the rule's action may write to."""
        if rule.scope == Scope.SELF:
            return [rule.schema]
        if rule.scope == Scope.PARENT:
            candidates = self.registry.parents_of(rule.schema)
        else:
            candidates = list(dict.fromkeys(c for c, _ in self.registry.children_of(rule.schema)))
        if rule.target_schema:
            candidates = [c for c in candidates if c == rule.target_schema]
        return candidates

    # --- state -------------------------------------------------------------

    def add_state_rule(self, rule: StateRule) -> None:
        """Add a state rule.

        Raises:
            RegistryFrozenError: If the index is frozen
            RuleConfigError: If the rule references unknown schemas or fields
        """
        with self._lock:
            self._check_writable(rule.label)
            schema = self._require_schema(rule.schema, rule)
            self._validate_paths(rule.paths(), rule)
            if not rule.effect.on_fields:
                raise RuleConfigError("State effect needs at least one field or '*'", rule)
            for name in rule.effect.on_fields:
                if name != "*" and schema.get_field(name) is None:
                    raise RuleConfigError(f"Unknown field '{name}' in schema '{schema.name}'", rule)
            if not rule.effect.asserts_anything:
                logger.warning(f"State rule '{rule.label}' asserts no flags")
            self._state[rule.schema].append(rule)
            self._state_reach[rule.schema] = self._state_reach.get(rule.schema, Reach()).merge(
                Reach.of(rule.paths())
            )
        logger.debug(f"Added state rule: {rule.label}")

    def state_rules_for(self, schema: str) -> List[StateRule]:
        return self._state.get(schema, [])

    def state_reach(self, schema: str) -> Reach:
        return self._state_reach.get(schema, Reach())

    # --- shared ------------------------------------------------------------

    def _require_schema(self, name: str, rule: object):
        schema = self.registry.get(name)
        if schema is None:
            raise RuleConfigError(f"Unknown schema '{name}'", rule)
        return schema

    def _validate_paths(self, paths: Iterable[PathExpr], rule: object) -> None:
        for p in paths:
            if p.schema and p.schema not in self.registry:
                raise RuleConfigError(f"Unknown schema '{p.schema}' in path '{p}'", rule)
