"""
Schema Registry for RuleDB.

The SchemaRegistry supplies schema definitions to the rule engine.
It provides:
- Registration of schemas
- Lookup by name
- Derived parent/child relations from refer fields
- Schema fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new schemas can be registered
    - Schema names are globally unique
    - The rule engine never mutates a registered schema

How to change safely:
    - Register all schemas before calling freeze()
    - Run validate_all() to catch refer targets that were never registered

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register(Order)
    >>> registry.register(OrderItem)
    >>> registry.freeze()
    'sha256:...'
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterator, List, Optional

from ..errors import DuplicateRegistrationError, RegistryFrozenError, UnknownSchemaError
from .types import FieldSpec, SchemaDef

logger = logging.getLogger(__name__)

_global_registry: Optional[SchemaRegistry] = None
_registry_lock = threading.Lock()


class SchemaRegistry:
    """Central registry for all schema definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schemas (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._schemas: Dict[str, SchemaDef] = {}
        self._children: Dict[str, List[tuple[str, FieldSpec]]] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, schema: SchemaDef) -> None:
        """Register a schema definition.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register schema '{schema.name}': registry is frozen"
                )
            if schema.name in self._schemas:
                raise DuplicateRegistrationError(f"Schema '{schema.name}' already registered")

            self._schemas[schema.name] = schema
            for f in schema.refer_fields():
                self._children.setdefault(f.refer, []).append((schema.name, f))
                if f.refer not in self._schemas and f.refer != schema.name:
                    logger.debug(
                        f"Schema '{schema.name}' refers to not-yet-registered schema '{f.refer}'"
                    )
            logger.debug(f"Registered schema: {schema.name} ({len(schema.fields)} fields)")

    def get(self, name: str) -> Optional[SchemaDef]:
        """Get a schema by name, or None."""
        return self._schemas.get(name)

    def require(self, name: str) -> SchemaDef:
        """Get a schema by name.

        Raises:
            UnknownSchemaError: If no such schema is registered
        """
        schema = self._schemas.get(name)
        if schema is None:
            raise UnknownSchemaError(name)
        return schema

    def __contains__(self, name: object) -> bool:
        return name in self._schemas

    def schemas(self) -> Iterator[SchemaDef]:
        """Iterate over all registered schemas in registration order."""
        yield from self._schemas.values()

    def parents_of(self, name: str) -> List[str]:
        """Parent schema names of `name`, in refer-field declaration order."""
        schema = self.require(name)
        return list(dict.fromkeys(f.refer for f in schema.refer_fields()))

    def children_of(self, name: str) -> List[tuple[str, FieldSpec]]:
        """(child schema, referring field) pairs pointing at `name`."""
        return list(self._children.get(name, []))

    def refer_field(self, child: str, parent: str) -> Optional[FieldSpec]:
        """The first field of `child` that refers to `parent`."""
        for f in self.require(child).refer_fields():
            if f.refer == parent:
                return f
        return None

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Schema registry frozen with {len(self._schemas)} schemas, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation, sorted by name."""
        return {"schemas": [self._schemas[n].to_dict() for n in sorted(self._schemas)]}

    @classmethod
    def from_dict(cls, data: dict) -> SchemaRegistry:
        """Create registry from dictionary representation (not frozen)."""
        registry = cls()
        for schema_data in data.get("schemas", []):
            registry.register(SchemaDef.from_dict(schema_data))
        return registry

    def validate_all(self) -> list[str]:
        """Validate all registered schemas for consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for schema in self._schemas.values():
            for f in schema.refer_fields():
                if f.refer not in self._schemas:
                    errors.append(
                        f"Field '{f.name}' in schema '{schema.name}' "
                        f"refers to unknown schema '{f.refer}'"
                    )
        return errors


def get_registry() -> SchemaRegistry:
    """Get the process-wide schema registry, creating it if needed."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = SchemaRegistry()
        return _global_registry


def reset_registry() -> None:
    """Reset the process-wide registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
