"""
Error types for RuleDB.

This module defines all exception types raised by the engine:
- RuleDbError: Base exception
- ValidationError: Combined-schema, per-schema or $state constraint violated
- UnknownFieldError: Unknown field in a payload
- ImmutableFieldError: Write against a field $state marks immutable
- CascadeLimitExceeded: Reaction propagation exceeded the depth limit
- CustomActionError: A registered custom action raised
- RuleConfigError: Invalid rule definition at registration time

Unresolvable paths are not errors: the path resolver returns NOT_FOUND
and any condition using it evaluates to False.

Invariants:
    - All errors inherit from RuleDbError
    - Errors include context for debugging
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RuleDbError(Exception):
    """Base exception for all RuleDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "RULEDB_ERROR"
        self.details = details or {}


class ValidationError(RuleDbError):
    """Payload validation failed.

    Raised when:
    - A combined-schema requirement is not met (minItems, excess data)
    - A record violates its own field constraints
    - A write violates $state (required or enum subset)

    Attributes:
        errors: Individual error messages
        layer: Which validation layer failed ("combined", "schema", "state")
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        layer: str = "schema",
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"layer": layer, "field": field_name, "errors": errors or []},
        )
        self.errors = errors or []
        self.layer = layer
        self.field_name = field_name


class UnknownFieldError(ValidationError):
    """Unknown field in payload.

    Includes suggestions for similar field names.
    """

    def __init__(
        self,
        field_name: str,
        schema: str,
        suggestions: Optional[List[str]] = None,
        layer: str = "schema",
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' in schema '{schema}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"
        super().__init__(msg, errors=[msg], layer=layer, field_name=field_name)
        self.code = "UNKNOWN_FIELD"
        self.schema = schema
        self.suggestions = suggestions


class ImmutableFieldError(RuleDbError):
    """Write attempted against fields marked immutable by $state."""

    def __init__(self, schema: str, record_id: str, fields: List[str]) -> None:
        super().__init__(
            f"Fields {sorted(fields)} of {schema}:{record_id} are immutable",
            code="IMMUTABLE_FIELD",
            details={"schema": schema, "record_id": record_id, "fields": sorted(fields)},
        )
        self.schema = schema
        self.record_id = record_id
        self.fields = sorted(fields)


class CascadeLimitExceeded(RuleDbError):
    """Reaction propagation depth exceeded.

    The mutation that started the cascade must be treated as failed;
    writes made earlier in the chain are untrusted.
    """

    def __init__(self, depth: int, limit: int, event: Any = None) -> None:
        super().__init__(
            f"Cascade depth {depth} exceeds limit {limit}",
            code="CASCADE_LIMIT_EXCEEDED",
            details={"depth": depth, "limit": limit, "event": repr(event)},
        )
        self.depth = depth
        self.limit = limit
        self.event = event


class CustomActionError(RuleDbError):
    """A registered custom action raised during dispatch."""

    def __init__(self, action_name: str, message: str) -> None:
        super().__init__(
            f"Custom action '{action_name}' failed: {message}",
            code="CUSTOM_ACTION_ERROR",
            details={"action": action_name},
        )
        self.action_name = action_name


class RuleConfigError(RuleDbError):
    """Rule definition is invalid.

    Raised at registration time for:
    - Path expressions that do not parse
    - References to unknown schemas or fields
    - Contradictory state effects that can hold together
    """

    def __init__(self, message: str, rule: Any = None) -> None:
        super().__init__(message, code="RULE_CONFIG_ERROR", details={"rule": repr(rule)})
        self.rule = rule


class DuplicateRuleError(RuleConfigError):
    """A rule or action with the same key is already registered."""

    pass


class RegistryFrozenError(RuleDbError):
    """Raised when attempting to modify a frozen registry or index."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REGISTRY_FROZEN")


class DuplicateRegistrationError(RuleDbError):
    """Raised when attempting to register a duplicate schema name."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="DUPLICATE_REGISTRATION")


class UnknownSchemaError(RuleDbError):
    """Schema name is not registered."""

    def __init__(self, schema: str) -> None:
        super().__init__(
            f"Unknown schema '{schema}'",
            code="UNKNOWN_SCHEMA",
            details={"schema": schema},
        )
        self.schema = schema


class RecordNotFoundError(RuleDbError):
    """Record does not exist in the data access layer."""

    def __init__(self, schema: str, record_id: str) -> None:
        super().__init__(
            f"Record {schema}:{record_id} not found",
            code="NOT_FOUND",
            details={"schema": schema, "record_id": record_id},
        )
        self.schema = schema
        self.record_id = record_id
