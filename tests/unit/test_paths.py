"""
Unit tests for the path resolver.

Tests cover:
- Path grammar parsing
- Resolution against event object, modified fields and ancestry
- NOT_FOUND for unsatisfied hops
"""

import pytest

from ruledb.errors import RuleConfigError
from ruledb.records import Record
from ruledb.rules.paths import (
    NOT_FOUND,
    ResolutionContext,
    Selector,
    parse_path,
    resolve,
)


@pytest.fixture
def ctx():
    customer = Record("Customer", "C1", {"name": "Ada", "tier": "gold"})
    order = Record("Order", "O1", {"number": "O1", "status": "in_process", "customer": "C1"})
    item = Record(
        "OrderItem",
        "I1",
        {"order": "O1", "sku": "A", "quantity": 2, "meta": {"color": {"name": "red"}}},
    )
    other = Record("OrderItem", "I2", {"order": "O1", "sku": "B", "quantity": 1})
    return {
        "item": ResolutionContext(
            event_object=item,
            modified_fields=frozenset({"quantity"}),
            ancestors=(order, customer),
        ),
        "order": ResolutionContext.for_record(order, (customer,), (item, other)),
    }


class TestParsePath:
    """Tests for parse_path."""

    def test_bare_field_is_event_object(self):
        """A bare field name means $eventObject.field."""
        expr = parse_path("status")
        assert expr.selector == Selector.EVENT_OBJECT
        assert expr.field == "status"

    def test_parent_defaults_to_first(self):
        """$parent means $parent(1)."""
        expr = parse_path("$parent.status")
        assert expr.selector == Selector.PARENT
        assert expr.index == 1
        assert expr.schema is None
        assert expr.depth == 1

    def test_parent_with_index(self):
        """$parent(n) selects the nth ancestor."""
        expr = parse_path("$parent(2).tier")
        assert expr.index == 2
        assert expr.depth == 2

    def test_schema_restricted_hop(self):
        """$parent('Schema', n) restricts by schema and is unbounded."""
        expr = parse_path("$parent('Customer', 1).tier")
        assert expr.schema == "Customer"
        assert expr.index == 1
        assert expr.depth is None

    def test_schema_restricted_without_index(self):
        """The index defaults to 1 after a schema name."""
        assert parse_path('$child("OrderItem").sku').index == 1

    def test_modified_fields(self):
        """$modifiedFields takes no field."""
        assert parse_path("$modifiedFields").selector == Selector.MODIFIED_FIELDS
        with pytest.raises(RuleConfigError):
            parse_path("$modifiedFields.status")

    def test_nested_tail(self):
        """Dotted tails are split into keys."""
        assert parse_path("$eventObject.meta.color").tail == ("meta", "color")

    @pytest.mark.parametrize(
        "expression",
        ["", "$sibling.x", "$parent(0).x", "$parent(a).x", "$eventObject(1).x", "$parent.1x"],
    )
    def test_invalid_expressions(self, expression):
        """Malformed expressions raise RuleConfigError."""
        with pytest.raises(RuleConfigError):
            parse_path(expression)


class TestResolve:
    """Tests for resolve."""

    def test_event_object_field(self, ctx):
        """Fields of the event object resolve directly."""
        assert resolve("$eventObject.quantity", ctx["item"]) == 2
        assert resolve("sku", ctx["item"]) == "A"

    def test_record_id(self, ctx):
        """id resolves the record identity."""
        assert resolve("$eventObject.id", ctx["item"]) == "I1"

    def test_missing_field_is_none(self, ctx):
        """A field the record does not carry resolves to None."""
        assert resolve("$eventObject.status", ctx["item"]) is None

    def test_modified_fields(self, ctx):
        """$modifiedFields resolves to the changed names."""
        assert resolve("$modifiedFields", ctx["item"]) == frozenset({"quantity"})

    def test_parent(self, ctx):
        """$parent resolves the nearest ancestor."""
        assert resolve("$parent.status", ctx["item"]) == "in_process"
        assert resolve("$parent(2).tier", ctx["item"]) == "gold"

    def test_parent_by_schema(self, ctx):
        """Schema-restricted hops skip other schemas."""
        assert resolve("$parent('Customer').name", ctx["item"]) == "Ada"

    def test_child(self, ctx):
        """$child(n) resolves descendants in order."""
        assert resolve("$child(2).sku", ctx["order"]) == "B"
        assert resolve("$child('OrderItem', 1).sku", ctx["order"]) == "A"

    def test_unsatisfied_hop_is_not_found(self, ctx):
        """Missing ancestors yield NOT_FOUND, not an error."""
        assert resolve("$parent(3).status", ctx["item"]) is NOT_FOUND
        assert resolve("$child.sku", ctx["item"]) is NOT_FOUND
        assert resolve("$parent('Warehouse').name", ctx["item"]) is NOT_FOUND

    def test_nested_keys(self, ctx):
        """Nested dict keys are traversed; missing keys are NOT_FOUND."""
        assert resolve("meta.color.name", ctx["item"]) == "red"
        assert resolve("meta.size", ctx["item"]) is NOT_FOUND

    def test_root_record_has_no_parent(self):
        """A root record resolves $parent to NOT_FOUND."""
        root = ResolutionContext.for_record(Record("Customer", "C1", {"name": "Ada"}))
        assert resolve("$parent.name", root) is NOT_FOUND

    def test_not_found_is_falsy(self):
        """NOT_FOUND is a falsy singleton."""
        assert not NOT_FOUND
        assert repr(NOT_FOUND) == "NOT_FOUND"
