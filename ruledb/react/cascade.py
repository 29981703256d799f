"""
Cascade controller for RuleDB.

Wraps the dispatch of one external mutation. Writes performed by
reaction actions come back from the dispatcher as follow-up events; the
controller queues them and dispatches them breadth-first, so every rule
for the original event runs before any cascade event.

Termination:
    - Each follow-up is one level deeper than the event that produced it;
      exceeding max_depth raises CascadeLimitExceeded
    - Writes of unchanged values are no-ops and produce no event, which
      stops two records from re-completing each other forever

The whole chain runs inside one DataAccess.transaction() scope. The
engine does not undo partial writes itself; all-or-nothing behavior is
up to the backend's transaction.

Invariants:
    - Events are dispatched in FIFO order (breadth-first)
    - Any action failure or depth overflow aborts the chain
    - Related records are loaded only for candidate rules that reference
      $parent/$child and whose local conditions hold
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List

from ..data.base import DataAccess, collect_ancestors, collect_descendants
from ..errors import CascadeLimitExceeded
from ..records import Event, Record
from ..rules.conditions import evaluate_all
from ..rules.index import Reach, RuleIndex
from ..rules.paths import ResolutionContext
from .dispatcher import ChainState, DispatchResult, ReactionDispatcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 16


@dataclass
class CascadeResult:
    """Outcome of one external mutation's cascade.

    Attributes:
        dispatched: Every dispatch result, in dispatch order
        writes: Records written by actions, with changed field names
        max_depth_reached: Deepest level dispatched (0 = roots only)
    """

    dispatched: List[DispatchResult] = field(default_factory=list)
    writes: List[tuple[Record, frozenset[str]]] = field(default_factory=list)
    max_depth_reached: int = 0

    @property
    def events(self) -> List[Event]:
        return [r.event for r in self.dispatched]

    @property
    def matched(self) -> List[str]:
        return [label for r in self.dispatched for label in r.matched]


class CascadeController:
    """Runs one external mutation and everything it triggers.

    Example:
        >>> controller = CascadeController(dispatcher, index, data, max_depth=16)
        >>> result = await controller.run(Event.modified(item, {"status"}))
        >>> result.writes
        [(Record(schema='Order', ...), frozenset({'status'}))]
    """

    def __init__(
        self,
        dispatcher: ReactionDispatcher,
        index: RuleIndex,
        data: DataAccess,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        if max_depth <= 0:
            raise ValueError(f"max_depth must be positive, got {max_depth}")
        self.dispatcher = dispatcher
        self.index = index
        self.data = data
        self.max_depth = max_depth

    async def run(self, *roots: Event) -> CascadeResult:
        """Dispatch root events and their cascade inside one transaction.

        Raises:
            CascadeLimitExceeded: If propagation goes deeper than max_depth
            CustomActionError: If a custom action fails
        """
        async with self.data.transaction():
            return await self.propagate(*roots)

    async def propagate(self, *roots: Event) -> CascadeResult:
        """Dispatch root events and their cascade.

        The caller owns the transaction scope; host mutations persist
        their own writes and propagate within the same scope.
        """
        chain = ChainState()
        result = CascadeResult()
        sequence = itertools.count()
        queue: Deque[tuple[Event, int]] = deque((e, 0) for e in roots)

        while queue:
            event, depth = queue.popleft()
            event.sequence = next(sequence)
            event = await self._hydrate(event)
            dispatched = await self.dispatcher.dispatch(event, chain)
            result.dispatched.append(dispatched)
            result.max_depth_reached = max(result.max_depth_reached, depth)

            if dispatched.follow_ups and depth + 1 > self.max_depth:
                logger.warning(
                    "Cascade limit exceeded",
                    extra={
                        "event": str(event),
                        "depth": depth + 1,
                        "limit": self.max_depth,
                        "writes": len(chain.writes),
                    },
                )
                raise CascadeLimitExceeded(depth + 1, self.max_depth, event)
            queue.extend((follow, depth + 1) for follow in dispatched.follow_ups)

        result.writes = list(chain.writes)
        if result.writes:
            logger.info(
                "Cascade complete",
                extra={
                    "root": str(roots[0]) if roots else None,
                    "events": len(result.dispatched),
                    "writes": len(result.writes),
                    "depth": result.max_depth_reached,
                },
            )
        return result

    async def _hydrate(self, event: Event) -> Event:
        """Load ancestry/descendants the event's candidate rules need.

        Candidates whose local conditions already fail on the bare event
        are skipped, so they never cause a query.
        """
        if not self.index.reaction_reach(event.schema, event.kind).any:
            return event
        ctx = ResolutionContext.from_event(event)
        reach = Reach()
        for rule in self.index.reactions_for(event.schema, event.kind):
            local = [c for c in rule.conditions if not any(p.is_relational for p in c.paths())]
            if evaluate_all(local, ctx):
                reach = reach.merge(Reach.of(rule.paths()))
        if not reach.any:
            return event
        if reach.ancestors != 0 and (
            reach.ancestors is None or len(event.ancestry) < reach.ancestors
        ):
            event.ancestry = await collect_ancestors(self.data, event.event_object, reach.ancestors)
        if reach.descendants != 0 and (
            reach.descendants is None or len(event.descendants) < reach.descendants
        ):
            event.descendants = await collect_descendants(
                self.data, event.event_object, reach.descendants
            )
        return event
