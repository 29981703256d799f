"""
Records and mutation events for RuleDB.

A Record is an instance of a schema: opaque identity plus field values.
An Event describes one create/modify/delete mutation and carries the
post-mutation snapshot the rule engine evaluates against.

Invariants:
    - Records are snapshots; updates produce new Record instances
    - modified_fields is empty for created and deleted events
    - ancestry[0], when present, is the event's parent context
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(Enum):
    """Kinds of mutation events."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class Record:
    """A snapshot of one record.

    Attributes:
        schema: Schema name
        id: Opaque record identity
        data: Field name -> value
    """

    schema: str
    id: str
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        """Get a field value; `id` resolves the record identity."""
        if name == "id":
            return self.id
        return self.data.get(name, default)

    def has(self, name: str) -> bool:
        return name == "id" or name in self.data

    def with_updates(self, updates: dict[str, Any]) -> Record:
        """Return a new snapshot with `updates` applied."""
        return Record(schema=self.schema, id=self.id, data={**self.data, **updates})

    def changed_fields(self, updates: dict[str, Any]) -> set[str]:
        """Names of fields whose value `updates` would change."""
        return {k for k, v in updates.items() if k not in self.data or self.data[k] != v}

    def to_dict(self) -> dict[str, Any]:
        return {"schema": self.schema, "id": self.id, "data": dict(self.data)}

    @property
    def key(self) -> tuple[str, str]:
        return (self.schema, self.id)


@dataclass
class Event:
    """A mutation event.

    Attributes:
        schema: Schema name of the mutated record
        kind: created, modified or deleted
        event_object: Record snapshot after the change (before, for deletes)
        modified_fields: Names of changed fields (modified events only)
        ancestry: Resolved ancestors, nearest first; ancestry[0] is the
            parent context
        descendants: Resolved descendants in traversal order
        sequence: Position within the cascade chain
        ts_ms: Event timestamp (Unix ms)
    """

    schema: str
    kind: EventKind
    event_object: Record
    modified_fields: frozenset[str] = frozenset()
    ancestry: tuple[Record, ...] = ()
    descendants: tuple[Record, ...] = ()
    sequence: int = 0
    ts_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def parent_context(self) -> Record | None:
        """The nearest resolved ancestor, if any."""
        return self.ancestry[0] if self.ancestry else None

    @classmethod
    def created(cls, record: Record, **kwargs: Any) -> Event:
        return cls(schema=record.schema, kind=EventKind.CREATED, event_object=record, **kwargs)

    @classmethod
    def modified(cls, record: Record, modified_fields: set[str] | frozenset[str], **kwargs: Any) -> Event:
        return cls(
            schema=record.schema,
            kind=EventKind.MODIFIED,
            event_object=record,
            modified_fields=frozenset(modified_fields),
            **kwargs,
        )

    @classmethod
    def deleted(cls, record: Record, **kwargs: Any) -> Event:
        return cls(schema=record.schema, kind=EventKind.DELETED, event_object=record, **kwargs)

    def __str__(self) -> str:
        return f"Event({self.kind.value} {self.schema}:{self.event_object.id} seq={self.sequence})"
