"""
Unit tests for rule definitions and the rule index.

Tests cover:
- Rule from_dict constructors
- Registration-time validation
- Candidate lookup by (schema, event kind)
- Reach computation for ancestry hydration
- Freezing
"""

import pytest

from ruledb.errors import RegistryFrozenError, RuleConfigError
from ruledb.records import EventKind
from ruledb.rules.index import Reach
from ruledb.rules.types import (
    AugmentationRule,
    Context,
    CustomAction,
    ReactionRule,
    Scope,
    SelectMode,
    Selection,
    SetAction,
    StateRule,
    Target,
)


def reaction(**overrides):
    spec = {
        "schema": "OrderItem",
        "event": "modified",
        "scope": "parent",
        "conditions": [("status", "eq", "completed")],
        "action": {"custom": "check_order_completion"},
    }
    spec.update(overrides)
    return ReactionRule.from_dict(spec)


class TestRuleTypes:
    """Tests for rule construction."""

    def test_reaction_from_dict(self):
        """Reaction rules parse scope, kind and action."""
        rule = reaction()
        assert rule.event_kind == EventKind.MODIFIED
        assert rule.scope == Scope.PARENT
        assert rule.action == CustomAction("check_order_completion")
        assert rule.label == "OrderItem.modified->parent"

    def test_set_action_parses_paths(self):
        """Set action values starting with '$' become paths."""
        action = SetAction.of({"status": "$eventObject.status", "note": "done"})
        assert len(action.paths()) == 1
        assert dict(action.target_fields)["note"] == "done"

    def test_invalid_scope(self):
        """Unknown scopes are rejected."""
        with pytest.raises(RuleConfigError, match="Invalid Scope"):
            reaction(scope="sibling")

    def test_invalid_action(self):
        """Actions must be set or custom."""
        with pytest.raises(RuleConfigError, match="Invalid action"):
            reaction(action={"call": "x"})

    def test_state_rule_flat_effect(self):
        """State rules accept flags next to the schema key."""
        rule = StateRule.from_dict(
            {
                "schema": "OrderItem",
                "conditions": [("status", "in", ["in_process", "completed"])],
                "onFields": ["quantity"],
                "immutable": True,
            }
        )
        assert rule.effect.on_fields == ("quantity",)
        assert rule.effect.immutable is True
        assert rule.effect.required is False

    def test_state_rule_nested_flags(self):
        """State rules accept an effect with flags nested under 'flags'."""
        rule = StateRule.from_dict(
            {
                "schema": "Order",
                "conditions": [("status", "eq", "completed")],
                "effect": {
                    "onFields": ["status"],
                    "flags": {"immutable": True, "hidden": True, "enumSubset": ["completed"]},
                },
            }
        )
        assert rule.effect.on_fields == ("status",)
        assert rule.effect.immutable is True
        assert rule.effect.hidden is True
        assert rule.effect.required is False
        assert rule.effect.enum_subset == frozenset({"completed"})

    def test_selection_parse(self):
        """Selections accept '*', exclusions and explicit lists."""
        assert Selection.parse("*").mode == SelectMode.ALL
        assert Selection.parse(["!note"]) == Selection(SelectMode.EXCLUDE, frozenset({"note"}))
        assert Selection.parse(["number"]).mode == SelectMode.EXPLICIT
        with pytest.raises(RuleConfigError, match="Cannot mix"):
            Selection.parse(["number", "!note"])

    def test_augmentation_from_dict(self):
        """Augmentation rules parse refers with camelCase keys."""
        rule = AugmentationRule.from_dict(
            {
                "schema": "Order",
                "target": "toCreate",
                "refers": [{"schema": "OrderItem", "alias": "items", "minItems": 1}],
            }
        )
        assert rule.key == ("Order", Target.TO_CREATE, Context.SLF)
        assert rule.refers[0].min_items == 1
        assert rule.refers[0].mandatory

    def test_augmentation_duplicate_alias(self):
        """Two refers with the same alias are rejected."""
        with pytest.raises(RuleConfigError, match="Duplicate child alias"):
            AugmentationRule.from_dict(
                {
                    "schema": "Order",
                    "target": "toCreate",
                    "refers": [
                        {"schema": "OrderItem", "alias": "items"},
                        {"schema": "OrderItem", "alias": "items"},
                    ],
                }
            )


class TestRuleIndex:
    """Tests for RuleIndex."""

    def test_lookup_by_schema_and_kind(self, index):
        """Reactions are keyed by (schema, event kind)."""
        rule = reaction()
        index.add_reaction(rule)

        assert index.reactions_for("OrderItem", EventKind.MODIFIED) == [rule]
        assert index.reactions_for("OrderItem", EventKind.CREATED) == []
        assert index.reactions_for("Order", EventKind.MODIFIED) == []

    def test_registration_order_kept(self, index):
        """Rules keep registration order within a key."""
        first = reaction(name="first")
        second = reaction(name="second")
        index.add_reaction(first)
        index.add_reaction(second)

        assert [r.name for r in index.reactions_for("OrderItem", EventKind.MODIFIED)] == [
            "first",
            "second",
        ]

    def test_unknown_schema(self, index):
        """Rules on unknown schemas are rejected."""
        with pytest.raises(RuleConfigError, match="Unknown schema 'Invoice'"):
            index.add_reaction(reaction(schema="Invoice"))

    def test_unknown_schema_in_path(self, index):
        """Schema-restricted hops must name registered schemas."""
        with pytest.raises(RuleConfigError, match="Unknown schema 'Warehouse'"):
            index.add_reaction(reaction(conditions=[("$parent('Warehouse').name", "eq", "x")]))

    def test_scope_without_target(self, index):
        """A parent scope needs a parent schema."""
        with pytest.raises(RuleConfigError, match="no parent schema"):
            index.add_reaction(reaction(schema="Customer", conditions=[]))

    def test_set_action_unknown_target_field(self, index):
        """Set targets must exist on the target schema."""
        with pytest.raises(RuleConfigError, match="Target field 'shipped'"):
            index.add_reaction(reaction(action={"set": {"shipped": True}}))

    def test_target_schemas(self, index):
        """Target schemas follow scope."""
        assert index.target_schemas(reaction()) == ["Order"]
        assert index.target_schemas(reaction(schema="Order", scope="child")) == ["OrderItem"]
        assert index.target_schemas(reaction(scope="self")) == ["OrderItem"]

    def test_custom_action_names(self, index):
        """Custom action names are collected for freeze-time checks."""
        index.add_reaction(reaction())
        assert index.custom_action_names() == {"check_order_completion"}

    def test_reaction_reach(self, index):
        """Reach records the deepest hop candidates use."""
        index.add_reaction(reaction(conditions=[("$parent(2).tier", "eq", "gold")]))
        index.add_reaction(reaction(event="created", scope="self", conditions=[],
                                    action={"set": {"sku": "x"}}))

        assert index.reaction_reach("OrderItem", EventKind.MODIFIED) == Reach(ancestors=2)
        assert not index.reaction_reach("OrderItem", EventKind.CREATED).any

    def test_reach_includes_set_values(self, index):
        """Set values reading $parent also need ancestry."""
        index.add_reaction(
            reaction(scope="self", conditions=[], action={"set": {"status": "$parent.status"}})
        )
        assert index.reaction_reach("OrderItem", EventKind.MODIFIED).ancestors == 1

    def test_schema_restricted_reach_is_unbounded(self, index):
        """Schema-restricted hops need the full traversal."""
        index.add_reaction(reaction(conditions=[("$parent('Customer').tier", "eq", "gold")]))
        assert index.reaction_reach("OrderItem", EventKind.MODIFIED).ancestors is None

    def test_state_rule_unknown_field(self, index):
        """State effects may only name declared fields."""
        rule = StateRule.from_dict({"schema": "OrderItem", "onFields": ["qty"], "immutable": True})
        with pytest.raises(RuleConfigError, match="Unknown field 'qty'"):
            index.add_state_rule(rule)

    def test_state_reach(self, index):
        """State reach follows state rule paths."""
        index.add_state_rule(
            StateRule.from_dict(
                {
                    "schema": "OrderItem",
                    "conditions": [("$parent.status", "eq", "completed")],
                    "onFields": "*",
                    "immutable": True,
                }
            )
        )
        assert index.state_reach("OrderItem") == Reach(ancestors=1)
        assert index.state_reach("Order") == Reach()

    def test_frozen_index_rejects_rules(self, index):
        """No rules can be added after freeze."""
        index.freeze()
        with pytest.raises(RegistryFrozenError):
            index.add_reaction(reaction())
