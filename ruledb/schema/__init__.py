"""
Schema module for RuleDB.

This module provides the data model the rule engine evaluates against:
- Type definitions (SchemaDef, FieldSpec, FieldKind, Cardinality)
- Schema registry with derived parent/child relations
- Per-schema payload validation

Invariants:
    - Schemas are immutable after registration
    - Relations are derived from refer fields, never stored separately
    - All schemas must be registered before the registry is frozen
"""

from .registry import SchemaRegistry, get_registry, reset_registry
from .types import Cardinality, FieldKind, FieldSpec, SchemaDef, field
from .validate import suggest_fields, validate_or_raise

__all__ = [
    # Types
    "Cardinality",
    "FieldKind",
    "FieldSpec",
    "SchemaDef",
    "field",
    # Registry
    "SchemaRegistry",
    "get_registry",
    "reset_registry",
    # Validation
    "validate_or_raise",
    "suggest_fields",
]
