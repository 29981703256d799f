"""
In-memory DataAccess implementation.

This module provides a dict-backed data access backend for:
- Unit and integration tests
- Local development without a storage engine

Invariants:
    - All data is lost on process exit
    - Records keep insertion order within a schema
    - transaction() snapshots on entry and restores on error
    - Transaction scopes of concurrent tasks are serialized, so a rollback
      never discards another mutation's writes. Writes made outside any
      scope are not serialized.

How to change safely:
    - This is test/dev code, changes don't affect production backends
    - Keep interface compatible with the DataAccess protocol
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import RecordNotFoundError
from ..records import Record
from ..rules.types import Scope
from ..schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


class InMemoryDataAccess:
    """Dict-backed implementation of DataAccess.

    Attributes:
        registry: Schema registry used to follow refer fields
        query_count: Number of data access calls made (excluding transaction)
        calls: Log of (method, schema) pairs, for assertions in tests

    Example:
        >>> data = InMemoryDataAccess(registry)
        >>> order = await data.insert("Order", {"number": "O1"}, record_id="O1")
        >>> await data.query("Order", {"number": "O1"})
        [Record(schema='Order', id='O1', ...)]
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._tx_depth = 0
        self._tx_lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None
        self.query_count = 0
        self.calls: List[tuple[str, str]] = []

    def _track(self, method: str, schema: str) -> None:
        self.query_count += 1
        self.calls.append((method, schema))

    def reset_stats(self) -> None:
        self.query_count = 0
        self.calls.clear()

    def _table(self, schema: str) -> Dict[str, Dict[str, Any]]:
        return self._records.setdefault(schema, {})

    def _snapshot(self, schema: str, record_id: str) -> Optional[Record]:
        row = self._records.get(schema, {}).get(record_id)
        if row is None:
            return None
        return Record(schema=schema, id=record_id, data=dict(row))

    async def get(self, schema: str, record_id: str) -> Optional[Record]:
        self._track("get", schema)
        return self._snapshot(schema, record_id)

    async def fetch_related(
        self,
        record: Record,
        scope: Scope,
        schema: Optional[str] = None,
    ) -> List[Record]:
        self._track(f"fetch_related:{scope.value}", record.schema)
        if scope == Scope.SELF:
            current = self._snapshot(record.schema, record.id)
            return [current] if current else []

        related: List[Record] = []
        if scope == Scope.PARENT:
            for f in self.registry.require(record.schema).refer_fields():
                if schema and f.refer != schema:
                    continue
                parent_id = record.get(f.name)
                parent = self._snapshot(f.refer, parent_id) if parent_id else None
                if parent is not None and parent.key not in {r.key for r in related}:
                    related.append(parent)
            return related

        for child_schema, f in self.registry.children_of(record.schema):
            if schema and child_schema != schema:
                continue
            for child_id, row in self._table(child_schema).items():
                if row.get(f.name) == record.id:
                    related.append(Record(schema=child_schema, id=child_id, data=dict(row)))
        return related

    async def write(self, record: Record, updates: Dict[str, Any]) -> Record:
        self._track("write", record.schema)
        row = self._records.get(record.schema, {}).get(record.id)
        if row is None:
            raise RecordNotFoundError(record.schema, record.id)
        row.update(updates)
        return Record(schema=record.schema, id=record.id, data=dict(row))

    async def insert(
        self,
        schema: str,
        data: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> Record:
        self._track("insert", schema)
        self.registry.require(schema)
        record_id = record_id or f"{schema.lower()}_{uuid.uuid4().hex[:12]}"
        table = self._table(schema)
        if record_id in table:
            raise ValueError(f"Record {schema}:{record_id} already exists")
        table[record_id] = dict(data)
        return Record(schema=schema, id=record_id, data=dict(data))

    async def delete(self, record: Record) -> bool:
        self._track("delete", record.schema)
        return self._records.get(record.schema, {}).pop(record.id, None) is not None

    async def query(self, schema: str, filter: Optional[Dict[str, Any]] = None) -> List[Record]:
        self._track("query", schema)
        filter = filter or {}
        return [
            Record(schema=schema, id=record_id, data=dict(row))
            for record_id, row in self._table(schema).items()
            if all(row.get(k) == v for k, v in filter.items())
        ]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Snapshot on entry of the outermost scope; restore on error.

        Scopes from different tasks run one at a time. A task that already
        holds a scope nests inside it.
        """
        task = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is task:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        async with self._tx_lock:
            self._tx_owner = task
            self._tx_depth = 1
            saved = copy.deepcopy(self._records)
            try:
                yield
            except BaseException:
                self._records = saved
                logger.debug("In-memory transaction rolled back")
                raise
            finally:
                self._tx_depth = 0
                self._tx_owner = None

    def count(self, schema: str) -> int:
        """Number of stored records of `schema` (not tracked)."""
        return len(self._records.get(schema, {}))

    def peek(self, schema: str, record_id: str) -> Optional[Record]:
        """Read a record without counting it as a data access call."""
        return self._snapshot(schema, record_id)
