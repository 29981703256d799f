"""
Core type definitions for the RuleDB schema model.

This module defines the foundational types the rule engine evaluates
against:
- FieldSpec: Individual field within a schema
- SchemaDef: Definition of a schema (ordered field mapping)
- Cardinality: One or many children per parent along a refer edge

Relations are not stored separately. A field with `refer` set implies a
directed edge child -> parent; its cardinality is MANY unless the
referring field is `unique`, in which case it is ONE.

Invariants:
    - Schema names are unique and act as identifiers
    - Field names are unique within a schema
    - ENUM fields declare enum_values, REFERENCE fields declare refer
    - Schemas are immutable after registration

Example:
    >>> from ruledb.schema.types import SchemaDef, field
    >>> Order = SchemaDef(
    ...     name="Order",
    ...     fields=(
    ...         field("number", "str", required=True),
    ...         field("status", "enum", enum_values=("pending", "completed")),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any


class FieldKind(Enum):
    """Supported field types in the schema."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # Unix milliseconds
    JSON = "json"
    ENUM = "enum"
    REFERENCE = "ref"  # Opaque id of a record in the `refer` schema
    LIST_STRING = "list_str"
    LIST_INT = "list_int"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


class Cardinality(Enum):
    """How many children may reference one parent along a refer edge."""

    ONE = "one"
    MANY = "many"


_TYPE_CHECKS = {
    FieldKind.STRING: lambda v: isinstance(v, str),
    FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    FieldKind.FLOAT: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
    FieldKind.TIMESTAMP: lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 0,
    FieldKind.JSON: lambda _: True,
    FieldKind.REFERENCE: lambda v: isinstance(v, str) and bool(v),
    FieldKind.LIST_STRING: lambda v: isinstance(v, list) and all(isinstance(i, str) for i in v),
    FieldKind.LIST_INT: lambda v: isinstance(v, list)
    and all(isinstance(i, int) and not isinstance(i, bool) for i in v),
}


@dataclass(frozen=True)
class FieldSpec:
    """Definition of a single field within a schema.

    Attributes:
        name: Field name (unique within the schema)
        kind: The data type of the field
        required: Whether the field must be present on create
        default: Default value if not provided
        enum_values: Valid values if kind is ENUM
        min_value: Lower bound (value for numbers, length for str/list)
        max_value: Upper bound (value for numbers, length for str/list)
        refer: Target schema name if kind is REFERENCE
        unique: Whether the value is unique; on a refer field this makes
            the relation one-to-one
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] | None = None
    min_value: float | None = None
    max_value: float | None = None
    refer: str | None = None
    unique: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.name.startswith("$") or "." in self.name:
            raise ValueError(f"Field name '{self.name}' cannot start with '$' or contain '.'")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")
        if self.kind == FieldKind.REFERENCE and not self.refer:
            raise ValueError(f"refer required for REFERENCE field '{self.name}'")
        if self.refer and self.kind != FieldKind.REFERENCE:
            raise ValueError(f"refer is only valid on REFERENCE fields ('{self.name}')")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError(f"min_value > max_value on field '{self.name}'")

    @property
    def cardinality(self) -> Cardinality:
        """Relation cardinality implied by this refer field."""
        return Cardinality.ONE if self.unique else Cardinality.MANY

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Args:
            value: The value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        if self.kind == FieldKind.ENUM:
            if not isinstance(value, str):
                return False, f"Field '{self.name}' must be a string, got {type(value).__name__}"
            if self.enum_values and value not in self.enum_values:
                return (
                    False,
                    f"Field '{self.name}' must be one of {self.enum_values}, got '{value}'",
                )
            return True, None

        check = _TYPE_CHECKS.get(self.kind)
        if check and not check(value):
            return False, f"Field '{self.name}' has invalid type for kind {self.kind.value}"

        return self._validate_bounds(value)

    def _validate_bounds(self, value: Any) -> tuple[bool, str | None]:
        if self.min_value is None and self.max_value is None:
            return True, None
        if isinstance(value, (str, list)):
            measured, what = len(value), "length"
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            measured, what = value, "value"
        else:
            return True, None
        if self.min_value is not None and measured < self.min_value:
            return False, f"Field '{self.name}' {what} must be >= {self.min_value}, got {measured}"
        if self.max_value is not None and measured > self.max_value:
            return False, f"Field '{self.name}' {what} must be <= {self.max_value}, got {measured}"
        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.required:
            result["required"] = True
        if self.default is not None:
            result["default"] = self.default
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.min_value is not None:
            result["min"] = self.min_value
        if self.max_value is not None:
            result["max"] = self.max_value
        if self.refer:
            result["refer"] = self.refer
        if self.unique:
            result["unique"] = True
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldSpec:
        """Create from dictionary representation."""
        kind = data.get("kind") or ("ref" if data.get("refer") else "str")
        return field(
            data["name"],
            kind,
            required=data.get("required", False),
            default=data.get("default"),
            enum_values=tuple(data["enum_values"]) if data.get("enum_values") else None,
            min_value=data.get("min"),
            max_value=data.get("max"),
            refer=data.get("refer"),
            unique=data.get("unique", False),
            description=data.get("description", ""),
        )


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    default: Any = None,
    enum_values: tuple[str, ...] | None = None,
    min_value: float | None = None,
    max_value: float | None = None,
    refer: str | None = None,
    unique: bool = False,
    description: str = "",
) -> FieldSpec:
    """Convenience function to create a FieldSpec.

    This is the preferred way to define fields in schema definitions.

    Example:
        >>> status = field("status", "enum", enum_values=("pending", "completed"))
        >>> order = field("order", "ref", refer="Order", required=True)
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldSpec(
        name=name,
        kind=kind,
        required=required,
        default=default,
        enum_values=tuple(enum_values) if enum_values else None,
        min_value=min_value,
        max_value=max_value,
        refer=refer,
        unique=unique,
        description=description,
    )


@dataclass(frozen=True)
class SchemaDef:
    """Definition of a schema.

    Attributes:
        name: Unique schema identifier
        fields: Ordered tuple of field definitions
        description: Human-readable description

    Invariants:
        - name must be unique across the registry
        - field names are unique within the schema
        - declaration order is preserved (it drives ancestry traversal)
    """

    name: str
    fields: tuple[FieldSpec, ...] = dataclass_field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        """Validate schema definition."""
        if not self.name:
            raise ValueError("Schema name cannot be empty")
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field name in schema '{self.name}'")

    def get_field(self, name: str) -> FieldSpec | None:
        """Get a field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def field_names(self) -> list[str]:
        """Get list of all field names in declaration order."""
        return [f.name for f in self.fields]

    def required_fields(self) -> list[FieldSpec]:
        """Get list of required fields."""
        return [f for f in self.fields if f.required]

    def refer_fields(self) -> list[FieldSpec]:
        """Get refer fields in declaration order."""
        return [f for f in self.fields if f.refer]

    def validate_payload(
        self,
        payload: dict[str, Any],
        *,
        partial: bool = False,
        exempt: frozenset[str] | set[str] = frozenset(),
    ) -> tuple[bool, list[str]]:
        """Validate a payload against this schema.

        Args:
            payload: Dictionary of field values
            partial: Only validate fields present in the payload (updates)
            exempt: Fields whose requiredness is satisfied elsewhere
                (e.g. a refer field filled in on nested create)

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors: list[str] = []

        known_names = {f.name for f in self.fields}
        unknown = set(payload.keys()) - known_names
        if unknown:
            errors.append(f"Unknown fields: {sorted(unknown)}")

        for f in self.fields:
            if partial and f.name not in payload:
                continue
            if f.name in exempt and payload.get(f.name) is None:
                continue
            value = payload.get(f.name, f.default)
            is_valid, error = f.validate_value(value)
            if not is_valid and error:
                errors.append(error)

        return len(errors) == 0, errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
        }
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaDef:
        """Create from dictionary representation.

        `fields` may be a list of field dicts or a mapping of
        field name -> field dict.
        """
        raw = data.get("fields", [])
        if isinstance(raw, dict):
            raw = [{"name": name, **spec} for name, spec in raw.items()]
        return cls(
            name=data["name"],
            fields=tuple(FieldSpec.from_dict(f) for f in raw),
            description=data.get("description", ""),
        )

    def __hash__(self) -> int:
        """Hash based on name (stable identifier)."""
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        """Equality based on name."""
        if not isinstance(other, SchemaDef):
            return NotImplemented
        return self.name == other.name
