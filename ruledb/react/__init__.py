"""
Reactivity module for RuleDB.

Matches reaction rules against mutation events and executes their
actions, propagating the resulting writes breadth-first under a depth
limit.

Invariants:
    - Rules failing their conditions never cause a data access call
    - Cascades are breadth-first and depth-limited
    - Unchanged writes are no-ops and produce no event
"""

from .cascade import DEFAULT_MAX_DEPTH, CascadeController, CascadeResult
from .dispatcher import ActionContext, ChainState, DispatchResult, ReactionDispatcher

__all__ = [
    "ActionContext",
    "CascadeController",
    "CascadeResult",
    "ChainState",
    "DEFAULT_MAX_DEPTH",
    "DispatchResult",
    "ReactionDispatcher",
]
