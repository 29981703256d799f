"""
Base protocol for the Data Access collaborator.

The rule engine never talks to storage directly. Everything it reads or
writes goes through a DataAccess implementation supplied by the host:
- fetch_related: load parent/child records along refer edges
- write/insert/delete: persist mutations
- query: equality-filtered lookups (used by custom actions)
- transaction: an opaque scope spanning one external mutation

This module also provides the ancestry/descendant traversal helpers used
to hydrate `$parent`/`$child` context before rule evaluation.

Invariants:
    - Related records are ordered by refer-field declaration order
    - The engine acquires transaction() once per external mutation and
      treats it as opaque (commit on success, rollback on error)

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from typing import (
    Any,
    AsyncContextManager,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

from ..records import Record
from ..rules.types import Scope

logger = logging.getLogger(__name__)

# Hard cap on records loaded by one unbounded traversal.
MAX_TRAVERSAL = 256


@runtime_checkable
class DataAccess(Protocol):
    """Protocol for data access backends.

    Example:
        >>> data = InMemoryDataAccess(registry)
        >>> order = await data.insert("Order", {"number": "O1"})
        >>> async with data.transaction():
        ...     await data.write(order, {"status": "completed"})
    """

    @abstractmethod
    async def get(self, schema: str, record_id: str) -> Optional[Record]:
        """Load one record by identity, or None."""
        ...

    @abstractmethod
    async def fetch_related(
        self,
        record: Record,
        scope: Scope,
        schema: Optional[str] = None,
    ) -> List[Record]:
        """Load records related to `record`.

        Args:
            record: Starting record
            scope: SELF returns [record]; PARENT the records its refer
                fields point at; CHILD the records referring to it
            schema: Restrict results to this schema

        Returns:
            Related records, in refer-field declaration order
        """
        ...

    @abstractmethod
    async def write(self, record: Record, updates: Dict[str, Any]) -> Record:
        """Apply field updates and return the new snapshot."""
        ...

    @abstractmethod
    async def insert(
        self,
        schema: str,
        data: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> Record:
        """Persist a new record and return it."""
        ...

    @abstractmethod
    async def delete(self, record: Record) -> bool:
        """Delete a record. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def query(self, schema: str, filter: Optional[Dict[str, Any]] = None) -> List[Record]:
        """Records of `schema` whose fields equal every filter entry."""
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """Scope spanning one external mutation (commit or roll back)."""
        ...


async def collect_ancestors(
    data: DataAccess,
    record: Record,
    depth: Optional[int],
) -> tuple[Record, ...]:
    """Ancestors of `record`, breadth-first, nearest first.

    Args:
        data: Data access backend
        record: Starting record
        depth: Number of ancestors needed (None for all, up to MAX_TRAVERSAL)
    """
    return await _traverse(data, record, Scope.PARENT, depth)


async def collect_descendants(
    data: DataAccess,
    record: Record,
    depth: Optional[int],
) -> tuple[Record, ...]:
    """Descendants of `record`, breadth-first, in traversal order."""
    return await _traverse(data, record, Scope.CHILD, depth)


async def _traverse(
    data: DataAccess,
    record: Record,
    scope: Scope,
    depth: Optional[int],
) -> tuple[Record, ...]:
    if depth == 0:
        return ()
    limit = MAX_TRAVERSAL if depth is None else min(depth, MAX_TRAVERSAL)
    seen = {record.key}
    result: list[Record] = []
    level = [record]
    while level and len(result) < limit:
        next_level: list[Record] = []
        for current in level:
            for related in await data.fetch_related(current, scope):
                if related.key in seen:
                    continue
                seen.add(related.key)
                result.append(related)
                next_level.append(related)
                if len(result) >= limit:
                    break
            if len(result) >= limit:
                break
        level = next_level
    if depth is None and len(result) >= MAX_TRAVERSAL:
        logger.warning(
            f"Traversal from {record.schema}:{record.id} truncated at {MAX_TRAVERSAL} records"
        )
    return tuple(result)
