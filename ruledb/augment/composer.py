"""
Augmentation composer for RuleDB.

Merges a schema's own field selection with the requirements it places on
referenced child schemas into one combined contract per
(schema, target, context):

    compose("Order", Target.TO_CREATE, Context.SLF)
        -> own fields: ("number", "status")
           children:   items -> OrderItem, many, minItems=1

Validation of a payload tree is two-layered and both layers must pass:

    1. Combined-schema   structure of the whole tree: excess keys against
                         the selection, mandatory aliases, cardinality,
                         minItems/maxItems, requiredFields
    2. Per-schema        every record (parent and each child) against its
                         own FieldSpec constraints

The combined layer runs over the entire tree before any per-schema check.

Child payloads are composed with the nested context; a schema without a
nested rule falls back to its slf rule, then to the default contract
(all own fields, no children).

Invariants:
    - At most one rule per (schema, target, context)
    - Child schemas must refer to the parent schema
    - The refer-back field of a nested child is filled in by the engine
      and is never required in the child payload
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..errors import DuplicateRuleError, RegistryFrozenError, RuleConfigError, ValidationError
from ..rules.types import AugmentationRule, ChildRequirement, Context, SelectMode, Target
from ..schema.registry import SchemaRegistry
from ..schema.types import Cardinality
from ..schema.validate import suggest_fields

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CombinedContract:
    """Shape of one operation on one schema.

    Attributes:
        schema: Schema name
        target: Operation the contract shapes
        context: slf or nested
        own_fields: Selected own field names, in declaration order
        children: Referenced child requirements
        refer_back: Field referring to the parent (nested contracts only)
    """

    schema: str
    target: Target
    context: Context
    own_fields: Tuple[str, ...]
    children: Tuple[ChildRequirement, ...] = ()
    refer_back: Optional[str] = None

    @property
    def aliases(self) -> Tuple[str, ...]:
        return tuple(c.alias for c in self.children)

    def child(self, alias: str) -> Optional[ChildRequirement]:
        for c in self.children:
            if c.alias == alias:
                return c
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.schema,
            "target": self.target.value,
            "context": self.context.value,
            "ownFields": list(self.own_fields),
            "childRequirements": [
                {
                    "schema": c.schema,
                    "alias": c.alias,
                    "cardinality": c.cardinality.value,
                    "minItems": c.min_items,
                    "maxItems": c.max_items,
                    "requiredFields": list(c.required_fields),
                }
                for c in self.children
            ],
        }


@dataclass
class PayloadNode:
    """One record of a validated payload tree, in persistence order."""

    contract: CombinedContract
    data: Dict[str, Any]
    location: str
    children: Dict[str, List[PayloadNode]]


class AugmentationComposer:
    """Registry of augmentation rules and the two validation layers.

    Example:
        >>> composer = AugmentationComposer(registry)
        >>> composer.register(AugmentationRule.from_dict({
        ...     "schema": "Order", "target": "toCreate",
        ...     "refers": [{"schema": "OrderItem", "alias": "items", "minItems": 1}],
        ... }))
        >>> contract = composer.compose("Order", Target.TO_CREATE)
        >>> tree = composer.validate(contract, payload)
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry
        self._rules: Dict[Tuple[str, Target, Context], AugmentationRule] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def register(self, rule: AugmentationRule) -> None:
        """Register an augmentation rule.

        Raises:
            DuplicateRuleError: If a rule for the same key exists
            RuleConfigError: If the rule names unknown schemas or fields
            RegistryFrozenError: If the composer is frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot add augmentation for '{rule.schema}': composer is frozen"
                )
            if rule.key in self._rules:
                schema, target, context = rule.key
                raise DuplicateRuleError(
                    f"Augmentation for {schema}.{target.value}('{context.value}') already registered",
                    rule,
                )
            self._check(rule)
            self._rules[rule.key] = rule
        logger.debug(
            f"Registered augmentation {rule.schema}.{rule.target.value}('{rule.context.value}')"
        )

    def _check(self, rule: AugmentationRule) -> None:
        schema = self.registry.get(rule.schema)
        if schema is None:
            raise RuleConfigError(f"Unknown schema '{rule.schema}'", rule)
        if rule.select.mode != SelectMode.ALL:
            unknown = sorted(n for n in rule.select.names if schema.get_field(n) is None)
            if unknown:
                raise RuleConfigError(f"Unknown fields {unknown} in select of '{rule.schema}'", rule)
        for req in rule.refers:
            child = self.registry.get(req.schema)
            if child is None:
                raise RuleConfigError(f"Unknown child schema '{req.schema}'", rule)
            if self.registry.refer_field(req.schema, rule.schema) is None:
                raise RuleConfigError(
                    f"Schema '{req.schema}' has no field referring to '{rule.schema}'", rule
                )
            if schema.get_field(req.alias) is not None:
                raise RuleConfigError(
                    f"Alias '{req.alias}' shadows a field of '{rule.schema}'", rule
                )
            missing = [n for n in req.required_fields if child.get_field(n) is None]
            if missing:
                raise RuleConfigError(
                    f"requiredFields {missing} not declared on '{req.schema}'", rule
                )

    def rule_for(self, schema: str, target: Target, context: Context) -> Optional[AugmentationRule]:
        return self._rules.get((schema, target, context))

    def compose(
        self,
        schema: str,
        target: Target,
        context: Context = Context.SLF,
        parent: Optional[str] = None,
    ) -> CombinedContract:
        """Combined contract for one operation.

        Args:
            schema: Schema name
            target: toCreate, toView or toEdit
            context: slf, or nested when composed as a referenced child
            parent: Parent schema name when nested (sets refer_back)
        """
        definition = self.registry.require(schema)
        rule = self._rules.get((schema, target, context))
        if rule is None and context == Context.NESTED:
            rule = self._rules.get((schema, target, Context.SLF))

        refer_back = None
        if parent is not None:
            spec = self.registry.refer_field(schema, parent)
            refer_back = spec.name if spec else None

        if rule is None:
            return CombinedContract(
                schema=schema,
                target=target,
                context=context,
                own_fields=tuple(definition.field_names()),
                refer_back=refer_back,
            )
        return CombinedContract(
            schema=schema,
            target=target,
            context=context,
            own_fields=rule.select.apply(definition),
            children=rule.refers,
            refer_back=refer_back,
        )

    def nested(self, contract: CombinedContract, req: ChildRequirement) -> CombinedContract:
        """Contract of a referenced child, composed in nested context."""
        return self.compose(req.schema, contract.target, Context.NESTED, parent=contract.schema)

    # --- validation --------------------------------------------------------

    def validate(
        self,
        contract: CombinedContract,
        payload: Any,
        *,
        partial: bool = False,
    ) -> PayloadNode:
        """Run combined-schema validation over the whole tree, then per-schema.

        Args:
            contract: Contract of the root record
            payload: Root payload, child payloads under their aliases
            partial: Root payload is an update (only present fields checked)

        Returns:
            The payload split into a tree of per-record nodes

        Raises:
            ValidationError: layer "combined" or "schema"
        """
        tree = self.validate_combined(contract, payload, partial=partial)
        self.validate_records(tree, partial=partial)
        return tree

    def validate_combined(
        self,
        contract: CombinedContract,
        payload: Any,
        *,
        partial: bool = False,
    ) -> PayloadNode:
        errors: List[str] = []
        tree = self._walk(contract, payload, contract.schema, partial, errors)
        if errors:
            raise ValidationError(
                f"Combined validation failed for {contract.schema}: {'; '.join(errors)}",
                errors=errors,
                layer="combined",
            )
        return tree

    def _walk(
        self,
        contract: CombinedContract,
        payload: Any,
        location: str,
        partial: bool,
        errors: List[str],
    ) -> PayloadNode:
        node = PayloadNode(contract=contract, data={}, location=location, children={})
        if not isinstance(payload, dict):
            errors.append(f"{location}: expected an object, got {type(payload).__name__}")
            return node

        schema = self.registry.require(contract.schema)
        allowed = set(contract.own_fields) | set(contract.aliases)
        if contract.refer_back:
            allowed.add(contract.refer_back)
        for key in payload:
            if key in allowed:
                continue
            if schema.get_field(key) is not None:
                errors.append(
                    f"{location}: field '{key}' is not selected for "
                    f"{contract.target.value}('{contract.context.value}')"
                )
                continue
            msg = f"{location}: unknown field '{key}'"
            suggestions = suggest_fields(key, schema, limit=3)
            if suggestions:
                msg += f". Did you mean: {', '.join(suggestions)}?"
            errors.append(msg)

        node.data = {k: v for k, v in payload.items() if k in schema.field_names()}

        for req in contract.children:
            value = payload.get(req.alias)
            where = f"{location}.{req.alias}"
            if value is None:
                if req.mandatory and not partial:
                    errors.append(f"{where}: required ({req.schema})")
                continue
            items = self._items(req, value, where, errors)
            if items is None:
                continue
            child_contract = self.nested(contract, req)
            nodes = node.children.setdefault(req.alias, [])
            for i, item in enumerate(items):
                item_where = f"{where}[{i}]" if req.cardinality == Cardinality.MANY else where
                if isinstance(item, dict):
                    missing = [n for n in req.required_fields if item.get(n) is None]
                    if missing:
                        errors.append(f"{item_where}: missing required fields {missing}")
                nodes.append(self._walk(child_contract, item, item_where, False, errors))
        return node

    @staticmethod
    def _items(
        req: ChildRequirement,
        value: Any,
        where: str,
        errors: List[str],
    ) -> Optional[List[Any]]:
        if req.cardinality == Cardinality.ONE:
            if isinstance(value, list):
                errors.append(f"{where}: expected a single object, got a list")
                return None
            return [value]

        if not isinstance(value, list):
            errors.append(f"{where}: expected a list, got {type(value).__name__}")
            return None
        if len(value) < req.min_items:
            errors.append(f"{where}: expected at least {req.min_items} item(s), got {len(value)}")
        if req.max_items is not None and len(value) > req.max_items:
            errors.append(f"{where}: expected at most {req.max_items} item(s), got {len(value)}")
        return value

    def validate_records(self, tree: PayloadNode, *, partial: bool = False) -> None:
        """Per-schema validation of every record in the tree.

        Raises:
            ValidationError: layer "schema", listing every failing record
        """
        errors: List[str] = []
        for node, is_root in _iter_nodes(tree):
            schema = self.registry.require(node.contract.schema)
            exempt = {node.contract.refer_back} if node.contract.refer_back else set()
            ok, node_errors = schema.validate_payload(
                node.data, partial=partial and is_root, exempt=exempt
            )
            if not ok:
                errors.extend(f"{node.location}: {e}" for e in node_errors)
        if errors:
            raise ValidationError(
                f"Validation failed for {tree.contract.schema}: {'; '.join(errors)}",
                errors=errors,
                layer="schema",
            )


def _iter_nodes(tree: PayloadNode):
    stack = [(tree, True)]
    while stack:
        node, is_root = stack.pop(0)
        yield node, is_root
        for nodes in node.children.values():
            stack.extend((n, False) for n in nodes)
