"""
Shared fixtures for RuleDB tests.

Provides the Customer -> Order -> OrderItem schema graph used across unit
and integration tests.
"""

import pytest

from ruledb.config import EngineConfig
from ruledb.data.memory import InMemoryDataAccess
from ruledb.engine import RuleEngine
from ruledb.rules.index import RuleIndex
from ruledb.schema.registry import SchemaRegistry
from ruledb.schema.types import SchemaDef, field

STATUSES = ("pending", "in_process", "completed")


def build_schemas():
    Customer = SchemaDef(
        name="Customer",
        fields=(
            field("name", "str", required=True),
            field("tier", "enum", enum_values=("standard", "gold"), default="standard"),
        ),
    )
    Order = SchemaDef(
        name="Order",
        fields=(
            field("number", "str", required=True),
            field("status", "enum", enum_values=STATUSES, default="pending"),
            field("customer", "ref", refer="Customer"),
            field("note", "str"),
            field("total", "float", min_value=0),
        ),
    )
    OrderItem = SchemaDef(
        name="OrderItem",
        fields=(
            field("order", "ref", refer="Order", required=True),
            field("sku", "str", required=True),
            field("quantity", "int", required=True, min_value=0),
            field("status", "enum", enum_values=STATUSES, default="pending"),
        ),
    )
    return Customer, Order, OrderItem


@pytest.fixture
def registry():
    """Registry with Customer, Order and OrderItem."""
    reg = SchemaRegistry()
    for schema in build_schemas():
        reg.register(schema)
    return reg


@pytest.fixture
def index(registry):
    return RuleIndex(registry)


@pytest.fixture
def data(registry):
    return InMemoryDataAccess(registry)


@pytest.fixture
def engine(registry, data):
    """Engine over the shared registry; tests register rules then freeze."""
    return RuleEngine(registry=registry, data=data, config=EngineConfig())
