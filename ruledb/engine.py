"""
RuleDB engine facade.

Wires the schema registry, rule index, state compiler, augmentation
composer, reaction dispatcher and cascade controller together and exposes
them to the host:

    Registration   register_schema / register_reaction /
                   register_state_rule / register_augmentation /
                   register_custom_action, then freeze()
    Ingress        on_mutation(event)
    Read path      compute_state(record, ancestry), compose(schema, target, context)
    Host ops       create / update / delete / view

Host operations validate, persist and propagate inside a single
DataAccess.transaction() scope per call.

Invariants:
    - Registration strictly precedes serving; freeze() ends registration
    - $state is computed fresh for every update, delete and view
    - Writes performed by reactions bypass $state unless
      enforce_state_on_reactions is set

Example:
    >>> engine = RuleEngine(config=EngineConfig())
    >>> engine.register_schema(order_schema)
    >>> engine.register_state_rule({"schema": "Order", "conditions": [...], "immutable": True})
    >>> engine.freeze()
    >>> result = await engine.create("Order", {"number": "O1", "items": [...]})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import json_log_formatter

from .augment.composer import AugmentationComposer, CombinedContract, PayloadNode
from .config import EngineConfig
from .data.base import DataAccess, collect_ancestors, collect_descendants
from .data.memory import InMemoryDataAccess
from .errors import (
    ImmutableFieldError,
    RecordNotFoundError,
    RuleConfigError,
    ValidationError,
)
from .records import Event, Record
from .react.cascade import CascadeController, CascadeResult
from .react.dispatcher import ReactionDispatcher
from .rules.actions import ActionFn, CustomActionRegistry
from .rules.index import RuleIndex
from .rules.types import AugmentationRule, Context, ReactionRule, Scope, StateRule, Target
from .schema.registry import SchemaRegistry
from .schema.types import Cardinality, SchemaDef
from .schema.validate import validate_or_raise
from .state.compiler import Ancestry, CompiledState, StateCompiler

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


@dataclass
class MutationResult:
    """Outcome of a host mutation.

    Attributes:
        record: The created/updated record (deleted snapshot for deletes)
        cascade: Reactions the mutation triggered; None when nothing changed
    """

    record: Record
    cascade: Optional[CascadeResult] = None

    @property
    def changed(self) -> bool:
        return self.cascade is not None


class RuleEngine:
    """Declarative rule engine over a schema/data model.

    Attributes:
        config: Engine configuration
        registry: Schema registry
        data: Data access backend
        index: Reaction/state rule index
        actions: Custom action registry
        compiler: State compiler
        composer: Augmentation composer
        dispatcher: Reaction dispatcher
        cascade: Cascade controller
    """

    def __init__(
        self,
        registry: Optional[SchemaRegistry] = None,
        data: Optional[DataAccess] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.check()
        self.config.log_config()
        self.registry = registry or SchemaRegistry()
        self.data = data or InMemoryDataAccess(self.registry)
        self.index = RuleIndex(self.registry)
        self.actions = CustomActionRegistry()
        self.compiler = StateCompiler(self.registry, self.index)
        self.composer = AugmentationComposer(self.registry)
        self.dispatcher = ReactionDispatcher(
            self.index,
            self.actions,
            self.data,
            write_guard=self._guard_reaction_write if self.config.enforce_state_on_reactions else None,
        )
        self.cascade = CascadeController(
            self.dispatcher, self.index, self.data, max_depth=self.config.max_cascade_depth
        )
        self._fingerprint: Optional[str] = None

    # --- registration ------------------------------------------------------

    def register_schema(self, schema: Union[SchemaDef, Dict[str, Any]]) -> SchemaDef:
        if isinstance(schema, dict):
            schema = SchemaDef.from_dict(schema)
        self.registry.register(schema)
        return schema

    def register_reaction(self, rule: Union[ReactionRule, Dict[str, Any]]) -> ReactionRule:
        if isinstance(rule, dict):
            rule = ReactionRule.from_dict(rule)
        self.index.add_reaction(rule)
        return rule

    def register_state_rule(self, rule: Union[StateRule, Dict[str, Any]]) -> StateRule:
        """Register a state rule after checking it against existing rules.

        Raises:
            RuleConfigError: If the rule is invalid or contradicts another
                rule that can hold at the same time
        """
        if isinstance(rule, dict):
            rule = StateRule.from_dict(rule)
        if rule.schema not in self.registry:
            raise RuleConfigError(f"Unknown schema '{rule.schema}'", rule)
        self.compiler.check_rule(rule, reject_contradictions=self.config.reject_contradictory_state)
        self.index.add_state_rule(rule)
        return rule

    def register_augmentation(
        self, rule: Union[AugmentationRule, Dict[str, Any]]
    ) -> AugmentationRule:
        if isinstance(rule, dict):
            rule = AugmentationRule.from_dict(rule)
        self.composer.register(rule)
        return rule

    def register_custom_action(self, name: str, fn: ActionFn) -> None:
        self.actions.register(name, fn)

    def freeze(self) -> str:
        """End registration: validate cross references and freeze registries.

        Returns:
            Schema registry fingerprint

        Raises:
            RuleConfigError: If a refer target or custom action is missing
        """
        errors = self.registry.validate_all()
        missing = sorted(self.index.custom_action_names() - set(self.actions.names()))
        errors.extend(f"Custom action '{name}' is not registered" for name in missing)
        if errors:
            raise RuleConfigError(f"Engine configuration invalid: {'; '.join(errors)}")

        self._fingerprint = self.registry.fingerprint or self.registry.freeze()
        self.index.freeze()
        self.actions.freeze()
        self.composer.freeze()
        logger.info(
            "Rule engine frozen",
            extra={"fingerprint": self._fingerprint, "actions": len(self.actions.names())},
        )
        return self._fingerprint

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    # --- ingress and read-path hooks --------------------------------------

    async def on_mutation(self, event: Event) -> CascadeResult:
        """Dispatch an externally performed mutation and its cascade."""
        return await self.cascade.run(event)

    def compute_state(self, record: Record, ancestry: Optional[Ancestry] = None) -> CompiledState:
        return self.compiler.compute_state(record, ancestry)

    def compose(
        self,
        schema: str,
        target: Union[Target, str],
        context: Union[Context, str] = Context.SLF,
    ) -> CombinedContract:
        return self.composer.compose(schema, Target(target), Context(context))

    async def load_ancestry(self, record: Record) -> Ancestry:
        """Load the related records the schema's state rules reference."""
        reach = self.index.state_reach(record.schema)
        if not reach.any:
            return Ancestry()
        return Ancestry(
            ancestors=await collect_ancestors(self.data, record, reach.ancestors),
            descendants=await collect_descendants(self.data, record, reach.descendants),
        )

    async def materialize_state(self, record: Record) -> CompiledState:
        """`$state` of a stored record, loading ancestry as needed."""
        return self.compiler.compute_state(record, await self.load_ancestry(record))

    async def _guard_reaction_write(self, record: Record, updates: Dict[str, Any]) -> None:
        state = await self.materialize_state(record)
        self.compiler.check_write(record, updates, state)

    # --- host operations ---------------------------------------------------

    async def create(
        self,
        schema: str,
        payload: Dict[str, Any],
        context: Union[Context, str] = Context.SLF,
    ) -> MutationResult:
        """Create a record and its nested children.

        Combined-schema validation runs over the whole payload tree, then
        per-schema validation of every record, then persistence. All
        created events are roots of one cascade.

        Raises:
            ValidationError: layer "combined", "schema" or "state"
        """
        contract = self.compose(schema, Target.TO_CREATE, context)
        tree = self.composer.validate(contract, payload)

        async with self.data.transaction():
            events: List[Event] = []
            record = await self._insert(tree, None, events)
            cascade = await self.cascade.propagate(*events)
        logger.debug(f"Created {schema}:{record.id} with {len(events) - 1} nested record(s)")
        return MutationResult(record=record, cascade=cascade)

    async def _insert(
        self,
        node: PayloadNode,
        parent: Optional[Record],
        events: List[Event],
    ) -> Record:
        definition = self.registry.require(node.contract.schema)
        values = {f.name: f.default for f in definition.fields if f.default is not None}
        values.update(node.data)
        if parent is not None and node.contract.refer_back:
            values[node.contract.refer_back] = parent.id

        state = await self.materialize_state(Record(schema=definition.name, id="", data=values))
        self.compiler.check_write(
            Record(schema=definition.name, id=""), values, state, check_immutable=False
        )

        record = await self.data.insert(definition.name, values)
        events.append(Event.created(record))
        for nodes in node.children.values():
            for child in nodes:
                await self._insert(child, record, events)
        return record

    async def update(
        self,
        schema: str,
        record_id: str,
        updates: Dict[str, Any],
    ) -> MutationResult:
        """Update fields of a stored record.

        Raises:
            RecordNotFoundError: If the record does not exist
            ValidationError: If a field is outside the toEdit selection,
                violates its FieldSpec, or violates $state
            ImmutableFieldError: If $state marks a changed field immutable
        """
        definition = self.registry.require(schema)
        contract = self.compose(schema, Target.TO_EDIT)
        tree = self.composer.validate_combined(contract, updates, partial=True)
        if tree.children:
            raise ValidationError(
                f"Child payloads {sorted(tree.children)} are not accepted on update of {schema}",
                errors=[f"{schema}.{alias}: nested update" for alias in sorted(tree.children)],
                layer="combined",
            )

        async with self.data.transaction():
            current = await self._require(schema, record_id)
            changed = current.changed_fields(tree.data)
            changes = {k: v for k, v in tree.data.items() if k in changed}
            if not changes:
                return MutationResult(record=current)

            state = await self.materialize_state(current)
            self.compiler.check_write(current, changes, state)
            validate_or_raise(definition, current.with_updates(changes).data)

            written = await self.data.write(current, changes)
            cascade = await self.cascade.propagate(Event.modified(written, set(changes)))
        return MutationResult(record=written, cascade=cascade)

    async def delete(self, schema: str, record_id: str) -> MutationResult:
        """Delete a stored record.

        Raises:
            RecordNotFoundError: If the record does not exist
            ImmutableFieldError: If $state marks every field immutable
        """
        definition = self.registry.require(schema)
        async with self.data.transaction():
            current = await self._require(schema, record_id)
            state = await self.materialize_state(current)
            names = set(definition.field_names())
            if names and names <= state.immutable_fields():
                raise ImmutableFieldError(schema, record_id, sorted(names))
            await self.data.delete(current)
            cascade = await self.cascade.propagate(Event.deleted(current))
        return MutationResult(record=current, cascade=cascade)

    async def view(
        self,
        schema: str,
        record_id: str,
        context: Union[Context, str] = Context.SLF,
    ) -> Dict[str, Any]:
        """Materialize a record for reading.

        Returns the toView selection of own fields minus hidden ones,
        nested children under their aliases, and a `$state` entry.
        """
        record = await self._require(schema, record_id)
        return await self._render(record, self.compose(schema, Target.TO_VIEW, context))

    async def _render(self, record: Record, contract: CombinedContract) -> Dict[str, Any]:
        state = await self.materialize_state(record)
        hidden = state.hidden_fields()
        out: Dict[str, Any] = {"id": record.id}
        for name in contract.own_fields:
            if name not in hidden:
                out[name] = record.get(name)

        for req in contract.children:
            child_contract = self.composer.nested(contract, req)
            related = await self.data.fetch_related(record, Scope.CHILD, req.schema)
            rendered = [await self._render(child, child_contract) for child in related]
            if req.cardinality == Cardinality.ONE:
                out[req.alias] = rendered[0] if rendered else None
            else:
                out[req.alias] = rendered
        out["$state"] = state.to_dict()
        return out

    async def _require(self, schema: str, record_id: str) -> Record:
        record = await self.data.get(schema, record_id)
        if record is None:
            raise RecordNotFoundError(schema, record_id)
        return record
