"""
Reaction dispatcher for RuleDB.

Runs the three-phase match/act pipeline for one event:

    1. Schema+kind filter   candidate rules from the RuleIndex (no I/O)
    2. Condition filter     conditions against the event snapshot (no I/O)
    3. Resolve & act        load scope targets, then run the action

Only rules that survive phase 2 may touch the data access layer. Writes
made in phase 3 are returned as follow-up `modified` events; the cascade
controller decides whether and when they are dispatched.

Invariants:
    - Phases run in rule-registration order
    - Phase 2 for every candidate completes before any phase 3 work
    - A write whose values equal the current values is a no-op and
      produces no follow-up event

How to change safely:
    - New action kinds need a branch in _execute
    - Keep phase 1 and 2 free of data access (tests assert query counts)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..data.base import DataAccess
from ..records import Event, Record
from ..rules.actions import CustomActionRegistry
from ..rules.conditions import evaluate_all
from ..rules.index import RuleIndex
from ..rules.paths import NOT_FOUND, PathExpr, ResolutionContext, resolve
from ..rules.types import CustomAction, ReactionRule, Scope, SetAction

logger = logging.getLogger(__name__)

WriteGuard = Callable[[Record, Dict[str, Any]], Awaitable[None]]


@dataclass
class ChainState:
    """Bookkeeping shared by every event of one cascade chain.

    Attributes:
        settled: (schema, record id, field) -> last value written in the chain
        writes: Records written, with the fields each write changed
    """

    settled: Dict[tuple[str, str, str], Any] = field(default_factory=dict)
    writes: List[tuple[Record, frozenset[str]]] = field(default_factory=list)

    def is_settled(self, record: Record, name: str, value: Any) -> bool:
        key = (record.schema, record.id, name)
        return key in self.settled and self.settled[key] == value

    def settle(self, record: Record, updates: Dict[str, Any]) -> None:
        for name, value in updates.items():
            self.settled[(record.schema, record.id, name)] = value


@dataclass
class DispatchResult:
    """Outcome of dispatching one event.

    Attributes:
        event: The dispatched event
        candidates: Labels of phase-1 candidates
        matched: Labels of rules that passed phase 2
        follow_ups: Events produced by phase-3 writes
    """

    event: Event
    candidates: List[str] = field(default_factory=list)
    matched: List[str] = field(default_factory=list)
    follow_ups: List[Event] = field(default_factory=list)


class ActionContext:
    """What a custom action receives.

    Attributes:
        event: The triggering event
        event_object: The triggering record snapshot
        targets: Scope-resolved records (parent(s), children or self)
        data: Data access backend, for reads and queries
        rule: The matched reaction rule

    Writes must go through write() so the resulting event is handed to
    the cascade controller; writing through `data` directly bypasses
    reactions.
    """

    def __init__(
        self,
        event: Event,
        targets: List[Record],
        data: DataAccess,
        rule: ReactionRule,
        writer: Callable[[Record, Dict[str, Any]], Awaitable[Record]],
        result: DispatchResult,
    ) -> None:
        self.event = event
        self.event_object = event.event_object
        self.targets = targets
        self.data = data
        self.rule = rule
        self._writer = writer
        self._result = result

    @property
    def target(self) -> Optional[Record]:
        """The first scope target, if any."""
        return self.targets[0] if self.targets else None

    async def write(self, record: Record, updates: Dict[str, Any]) -> Record:
        """Write through the engine; returns the up-to-date snapshot."""
        return await self._writer(record, updates)

    async def query(self, schema: str, filter: Optional[Dict[str, Any]] = None) -> List[Record]:
        return await self.data.query(schema, filter)

    def emit(self, event: Event) -> None:
        """Submit an extra event to the cascade."""
        self._result.follow_ups.append(event)


class ReactionDispatcher:
    """Matches reaction rules against an event and executes their actions.

    Example:
        >>> dispatcher = ReactionDispatcher(index, actions, data)
        >>> result = await dispatcher.dispatch(event, ChainState())
        >>> result.follow_ups
        [Event(modified Order:O1 ...)]
    """

    def __init__(
        self,
        index: RuleIndex,
        actions: CustomActionRegistry,
        data: DataAccess,
        write_guard: Optional[WriteGuard] = None,
    ) -> None:
        self.index = index
        self.actions = actions
        self.data = data
        self.write_guard = write_guard

    def match(self, event: Event) -> tuple[List[ReactionRule], List[ReactionRule]]:
        """Phases 1 and 2: (candidates, matched). Performs no data access."""
        candidates = self.index.reactions_for(event.schema, event.kind)
        if not candidates:
            return [], []
        ctx = ResolutionContext.from_event(event)
        matched = [r for r in candidates if evaluate_all(r.conditions, ctx)]
        return candidates, matched

    async def dispatch(self, event: Event, chain: ChainState) -> DispatchResult:
        """Run all three phases for one event."""
        candidates, matched = self.match(event)
        result = DispatchResult(
            event=event,
            candidates=[r.label for r in candidates],
            matched=[r.label for r in matched],
        )
        for rule in matched:
            logger.debug(
                "Reaction matched",
                extra={"rule": rule.label, "event": str(event), "scope": rule.scope.value},
            )
            targets = await self._resolve_scope(rule, event)
            await self._execute(rule, event, targets, chain, result)
        return result

    async def _resolve_scope(self, rule: ReactionRule, event: Event) -> List[Record]:
        if rule.scope == Scope.SELF:
            return await self.data.fetch_related(event.event_object, Scope.SELF)
        return await self.data.fetch_related(event.event_object, rule.scope, rule.target_schema)

    async def _execute(
        self,
        rule: ReactionRule,
        event: Event,
        targets: List[Record],
        chain: ChainState,
        result: DispatchResult,
    ) -> None:
        action = rule.action

        async def writer(record: Record, updates: Dict[str, Any]) -> Record:
            return await self.apply_write(record, updates, chain, result)

        if isinstance(action, SetAction):
            ctx = ResolutionContext.from_event(event)
            for target in targets:
                updates = self._resolve_updates(action, target, ctx)
                if updates:
                    await writer(target, updates)
            return

        if isinstance(action, CustomAction):
            action_ctx = ActionContext(event, targets, self.data, rule, writer, result)
            returned = await self.actions.invoke(action.function_name, action_ctx)
            if isinstance(returned, Event):
                result.follow_ups.append(returned)
            elif isinstance(returned, (list, tuple)):
                result.follow_ups.extend(e for e in returned if isinstance(e, Event))
            return

        raise TypeError(f"Unsupported action type: {type(action).__name__}")

    def _resolve_updates(
        self,
        action: SetAction,
        target: Record,
        ctx: ResolutionContext,
    ) -> Dict[str, Any]:
        schema = self.index.registry.require(target.schema)
        updates: Dict[str, Any] = {}
        for name, expr in action.target_fields:
            if schema.get_field(name) is None:
                continue
            value = resolve(expr, ctx) if isinstance(expr, PathExpr) else expr
            if value is NOT_FOUND:
                logger.debug(f"Skipping {target.schema}.{name}: '{expr}' did not resolve")
                continue
            updates[name] = value
        return updates

    async def apply_write(
        self,
        record: Record,
        updates: Dict[str, Any],
        chain: ChainState,
        result: DispatchResult,
    ) -> Record:
        """Write changed values and queue the resulting modified event.

        Values equal to the record's current value, or already settled to
        the same value in this chain, are dropped. If nothing is left the
        write is a no-op and no event is produced.
        """
        current = await self.data.get(record.schema, record.id) or record
        effective = {
            k: v
            for k, v in updates.items()
            if current.get(k) != v and not chain.is_settled(current, k, v)
        }
        if not effective:
            return current

        if self.write_guard is not None:
            await self.write_guard(current, effective)

        written = await self.data.write(current, effective)
        chain.settle(written, effective)
        chain.writes.append((written, frozenset(effective)))
        result.follow_ups.append(Event.modified(written, set(effective)))
        return written
