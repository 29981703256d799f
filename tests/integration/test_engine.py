"""
Integration tests for RuleEngine with the in-memory data access backend.

Tests cover:
- Order/OrderItem state rules end to end
- Order completion reaction, exactly once
- Augmented create with nested children
- Cascade limit and custom action failures with rollback
- View materialization with $state
"""

import pytest

from ruledb.config import EngineConfig
from ruledb.data.memory import InMemoryDataAccess
from ruledb.engine import RuleEngine
from ruledb.errors import (
    CascadeLimitExceeded,
    CustomActionError,
    ImmutableFieldError,
    RecordNotFoundError,
    RuleConfigError,
    ValidationError,
)
from ruledb.records import Event, EventKind


async def check_order_completion(ctx):
    """Complete the parent order once every item is completed."""
    order = ctx.target
    items = await ctx.query("OrderItem", {"order": order.id})
    if items and all(i.get("status") == "completed" for i in items):
        await ctx.write(order, {"status": "completed"})


def nest_items(engine):
    engine.register_augmentation(
        {"schema": "Order", "target": "toCreate", "refers": [{"schema": "OrderItem", "alias": "items"}]}
    )


def configure(engine, *, completion=True):
    engine.register_state_rule(
        {
            "schema": "OrderItem",
            "name": "lock-quantity",
            "conditions": [("status", "in", ["in_process", "completed"])],
            "onFields": ["quantity"],
            "immutable": True,
        }
    )
    engine.register_state_rule(
        {
            "schema": "OrderItem",
            "name": "lock-completed-order",
            "conditions": [("$parent.status", "eq", "completed")],
            "onFields": "*",
            "immutable": True,
        }
    )
    engine.register_augmentation(
        {
            "schema": "Order",
            "target": "toCreate",
            "select": ["!total"],
            "refers": [{"schema": "OrderItem", "alias": "items", "minItems": 1}],
        }
    )
    engine.register_augmentation(
        {
            "schema": "Order",
            "target": "toView",
            "refers": [{"schema": "OrderItem", "alias": "items"}],
        }
    )
    if completion:
        engine.register_custom_action("check_order_completion", check_order_completion)
        engine.register_reaction(
            {
                "schema": "OrderItem",
                "event": "modified",
                "scope": "parent",
                "conditions": [
                    ("$modifiedFields", "in", ["status"]),
                    ("status", "eq", "completed"),
                ],
                "action": {"custom": "check_order_completion"},
            }
        )
    engine.freeze()
    return engine


async def create_order(engine, quantities=(1, 2)):
    result = await engine.create(
        "Order",
        {
            "number": "O1",
            "items": [{"sku": f"SKU{i}", "quantity": q} for i, q in enumerate(quantities)],
        },
    )
    order = result.record
    items = await engine.data.query("OrderItem", {"order": order.id})
    return order, items


class TestStateRules:
    """$state enforcement through update/delete."""

    @pytest.mark.asyncio
    async def test_quantity_locks_when_in_process(self, engine):
        """Quantity is editable while pending and immutable once in process."""
        configure(engine)
        _, items = await create_order(engine)
        item = items[0]

        state = await engine.materialize_state(item)
        assert not state.get("quantity").immutable
        await engine.update("OrderItem", item.id, {"quantity": 5})

        await engine.update("OrderItem", item.id, {"status": "in_process"})
        current = await engine.data.get("OrderItem", item.id)
        assert engine.compute_state(current).get("quantity").immutable

        with pytest.raises(ImmutableFieldError) as exc_info:
            await engine.update("OrderItem", item.id, {"quantity": 6})
        assert exc_info.value.fields == ["quantity"]
        assert engine.data.peek("OrderItem", item.id).get("quantity") == 5

    @pytest.mark.asyncio
    async def test_completed_parent_locks_every_field(self, engine):
        """Children of a completed order reject writes to any field."""
        configure(engine, completion=False)
        order, items = await create_order(engine)
        await engine.update("Order", order.id, {"status": "completed"})

        with pytest.raises(ImmutableFieldError) as exc_info:
            await engine.update("OrderItem", items[0].id, {"sku": "NEW"})
        assert exc_info.value.fields == ["sku"]

        with pytest.raises(ImmutableFieldError):
            await engine.delete("OrderItem", items[0].id)

    @pytest.mark.asyncio
    async def test_schema_validation_on_update(self, engine):
        """Updates are validated against the field spec."""
        configure(engine)
        _, items = await create_order(engine)

        with pytest.raises(ValidationError) as exc_info:
            await engine.update("OrderItem", items[0].id, {"quantity": -3})
        assert exc_info.value.layer == "schema"

    @pytest.mark.asyncio
    async def test_unchanged_update_produces_no_event(self, engine):
        """Writing current values is a no-op."""
        configure(engine)
        _, items = await create_order(engine)

        result = await engine.update("OrderItem", items[0].id, {"quantity": items[0].get("quantity")})

        assert not result.changed

    @pytest.mark.asyncio
    async def test_update_missing_record(self, engine):
        """Updating an unknown id raises RecordNotFoundError."""
        configure(engine)
        with pytest.raises(RecordNotFoundError):
            await engine.update("OrderItem", "nope", {"quantity": 1})


class TestOrderCompletion:
    """Reaction: all items completed -> order completed."""

    @pytest.mark.asyncio
    async def test_order_completes_exactly_once(self, engine):
        """The order completes after the last item, with a single write."""
        configure(engine)
        order, items = await create_order(engine, quantities=(1, 1, 1))

        for item in items[:-1]:
            await engine.update("OrderItem", item.id, {"status": "completed"})
            assert engine.data.peek("Order", order.id).get("status") == "pending"

        result = await engine.update("OrderItem", items[-1].id, {"status": "completed"})

        assert engine.data.peek("Order", order.id).get("status") == "completed"
        order_writes = [r for r, fields in result.cascade.writes if r.schema == "Order"]
        assert len(order_writes) == 1

    @pytest.mark.asyncio
    async def test_redispatch_is_idempotent(self, engine):
        """Re-dispatching the final item event does not write the order again."""
        configure(engine)
        order, items = await create_order(engine, quantities=(1,))
        result = await engine.update("OrderItem", items[0].id, {"status": "completed"})
        final_event = result.cascade.events[0]

        engine.data.reset_stats()
        replay = await engine.on_mutation(
            Event.modified(final_event.event_object, final_event.modified_fields)
        )

        assert replay.matched == ["OrderItem.modified->parent"]
        assert replay.writes == []
        assert ("write", "Order") not in engine.data.calls

        again = await engine.update("OrderItem", items[0].id, {"status": "completed"})
        assert not again.changed

    @pytest.mark.asyncio
    async def test_unrelated_update_does_not_query(self, engine):
        """Item updates that fail the conditions never reach the data layer."""
        configure(engine)
        _, items = await create_order(engine)

        event = Event.modified(items[0].with_updates({"sku": "X"}), {"sku"})
        engine.data.reset_stats()
        result = await engine.on_mutation(event)

        assert result.matched == []
        assert engine.data.query_count == 0


class TestAugmentedCreate:
    """Create with nested children and two-layer validation."""

    @pytest.mark.asyncio
    async def test_create_with_items(self, engine):
        """Children are persisted with their refer field filled in."""
        configure(engine)
        result = await engine.create(
            "Order", {"number": "O1", "items": [{"sku": "A", "quantity": 2}]}
        )

        order = result.record
        items = await engine.data.query("OrderItem", {"order": order.id})
        assert order.get("status") == "pending"
        assert [i.get("sku") for i in items] == ["A"]
        assert [e.kind for e in result.cascade.events] == [EventKind.CREATED, EventKind.CREATED]

    @pytest.mark.asyncio
    async def test_zero_items_fails_combined_validation(self, engine):
        """minItems is checked before any per-schema validation."""
        configure(engine)

        with pytest.raises(ValidationError) as exc_info:
            await engine.create("Order", {"items": []})

        assert exc_info.value.layer == "combined"
        assert engine.data.count("Order") == 0

    @pytest.mark.asyncio
    async def test_malformed_item_fails_per_schema(self, engine):
        """A negative quantity passes combined but fails per-schema validation."""
        configure(engine)

        with pytest.raises(ValidationError) as exc_info:
            await engine.create("Order", {"number": "O1", "items": [{"sku": "A", "quantity": -1}]})

        assert exc_info.value.layer == "schema"
        assert engine.data.count("Order") == 0
        assert engine.data.count("OrderItem") == 0

    @pytest.mark.asyncio
    async def test_unselected_field_rejected(self, engine):
        """Fields excluded by select are rejected on create."""
        configure(engine)

        with pytest.raises(ValidationError, match="'total' is not selected"):
            await engine.create(
                "Order", {"number": "O1", "total": 9.5, "items": [{"sku": "A", "quantity": 1}]}
            )


class TestCascadeFailures:
    """Depth limit and custom action failures."""

    @pytest.mark.asyncio
    async def test_oscillation_raises_and_rolls_back(self, registry):
        """An oscillating chain stops at the depth limit; the mutation is undone."""
        data = InMemoryDataAccess(registry)
        engine = RuleEngine(registry, data, EngineConfig(max_cascade_depth=8))
        flips = [("in_process", "pending"), ("pending", "in_process")]
        for when, then in flips:
            engine.register_reaction(
                {
                    "schema": "Order",
                    "event": "modified",
                    "scope": "child",
                    "conditions": [("status", "eq", when)],
                    "action": {"set": {"status": when}},
                }
            )
            engine.register_reaction(
                {
                    "schema": "OrderItem",
                    "event": "modified",
                    "scope": "parent",
                    "conditions": [("status", "eq", when)],
                    "action": {"set": {"status": then}},
                }
            )
        nest_items(engine)
        engine.freeze()
        order, items = await create_order(engine, quantities=(1,))

        with pytest.raises(CascadeLimitExceeded) as exc_info:
            await engine.update("Order", order.id, {"status": "in_process"})

        assert exc_info.value.limit == 8
        assert data.peek("Order", order.id).get("status") == "pending"
        assert data.peek("OrderItem", items[0].id).get("status") == "pending"

    @pytest.mark.asyncio
    async def test_custom_action_failure_propagates(self, engine):
        """A failing custom action fails the mutation and rolls it back."""

        def reject(ctx):
            raise RuntimeError("inventory service unavailable")

        engine.register_custom_action("reserve_stock", reject)
        engine.register_reaction(
            {"schema": "OrderItem", "event": "created", "action": {"custom": "reserve_stock"}}
        )
        nest_items(engine)
        engine.freeze()

        with pytest.raises(CustomActionError, match="inventory service unavailable"):
            await engine.create("Order", {"number": "O1", "items": [{"sku": "A", "quantity": 1}]})
        assert engine.data.count("Order") == 0

    def test_freeze_requires_registered_actions(self, engine):
        """Rules naming unregistered actions fail at freeze."""
        engine.register_reaction(
            {"schema": "OrderItem", "event": "created", "action": {"custom": "missing"}}
        )
        with pytest.raises(RuleConfigError, match="'missing' is not registered"):
            engine.freeze()

    @pytest.mark.asyncio
    async def test_enforce_state_on_reactions(self, registry):
        """With enforcement on, reaction writes respect $state."""
        engine = RuleEngine(
            registry, InMemoryDataAccess(registry), EngineConfig(enforce_state_on_reactions=True)
        )
        engine.register_state_rule(
            {
                "schema": "Order",
                "conditions": [("status", "eq", "completed")],
                "onFields": ["note"],
                "immutable": True,
            }
        )
        engine.register_reaction(
            {
                "schema": "OrderItem",
                "event": "modified",
                "scope": "parent",
                "action": {"set": {"note": "$eventObject.sku"}},
            }
        )
        nest_items(engine)
        engine.freeze()
        order, items = await create_order(engine, quantities=(1,))
        await engine.update("Order", order.id, {"status": "completed"})

        with pytest.raises(ImmutableFieldError):
            await engine.update("OrderItem", items[0].id, {"sku": "CHANGED"})


class TestView:
    """View materialization."""

    @pytest.mark.asyncio
    async def test_view_includes_children_and_state(self, engine):
        """Views nest children and carry $state."""
        configure(engine)
        order, items = await create_order(engine)
        await engine.update("OrderItem", items[0].id, {"status": "in_process"})

        view = await engine.view("Order", order.id)

        assert view["number"] == "O1"
        assert [i["sku"] for i in view["items"]] == ["SKU0", "SKU1"]
        assert view["items"][0]["$state"]["fields"]["quantity"]["immutable"] is True
        assert view["items"][1]["$state"] == {"fields": {}}

    @pytest.mark.asyncio
    async def test_hidden_fields_omitted(self, engine):
        """Fields flagged hidden are left out of the view."""
        engine.register_state_rule(
            {
                "schema": "Order",
                "conditions": [("status", "eq", "pending")],
                "onFields": ["total"],
                "hidden": True,
            }
        )
        engine.freeze()
        order = (await engine.create("Order", {"number": "O1", "total": 3.0})).record

        view = await engine.view("Order", order.id)

        assert "total" not in view
        assert view["$state"]["fields"]["total"]["hidden"] is True
