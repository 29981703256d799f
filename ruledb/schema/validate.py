"""
Per-schema payload validation for RuleDB.

This module provides validation utilities used by the augmentation
composer and by host writes:
- Payload validation against a schema, raising on failure
- Helpful error messages with suggestions for unknown fields

Invariants:
    - Validation errors are deterministic
    - Unknown fields are reported before value errors
"""

from __future__ import annotations

from difflib import get_close_matches
from typing import Any, Dict, List

from ..errors import UnknownFieldError, ValidationError
from .types import SchemaDef


def validate_or_raise(
    schema: SchemaDef,
    payload: Dict[str, Any],
    *,
    partial: bool = False,
    exempt: frozenset[str] | set[str] = frozenset(),
) -> None:
    """Validate payload and raise if invalid.

    Args:
        schema: Schema to validate against
        payload: Payload to validate
        partial: Only validate fields present in the payload
        exempt: Fields whose requiredness is satisfied elsewhere

    Raises:
        UnknownFieldError: If an unknown field is provided
        ValidationError: If validation fails
    """
    known_fields = schema.field_names()
    unknown = sorted(set(payload.keys()) - set(known_fields))
    if unknown:
        field_name = unknown[0]
        suggestions = get_close_matches(field_name, known_fields, n=3)
        raise UnknownFieldError(field_name, schema.name, suggestions)

    is_valid, errors = schema.validate_payload(payload, partial=partial, exempt=exempt)
    if not is_valid:
        raise ValidationError(
            f"Validation failed for {schema.name}: {'; '.join(errors)}",
            errors=errors,
            layer="schema",
        )


def suggest_fields(partial: str, schema: SchemaDef, limit: int = 5) -> List[str]:
    """Suggest field names based on partial input."""
    known = schema.field_names()
    matches = get_close_matches(partial, known, n=limit)
    prefix_matches = [n for n in known if n.lower().startswith(partial.lower())]
    return list(dict.fromkeys(matches + prefix_matches))[:limit]
