"""
Data access abstraction for RuleDB.

The engine reads and writes records only through the DataAccess
protocol. An in-memory implementation is provided for tests and local
development; hosts supply their own backend in production.
"""

from .base import MAX_TRAVERSAL, DataAccess, collect_ancestors, collect_descendants
from .memory import InMemoryDataAccess

__all__ = [
    "DataAccess",
    "InMemoryDataAccess",
    "MAX_TRAVERSAL",
    "collect_ancestors",
    "collect_descendants",
]
