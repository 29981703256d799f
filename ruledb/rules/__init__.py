"""
Rules module for RuleDB.

This module provides the declarative rule layer:
- Path expressions and the no-I/O path resolver
- Condition evaluation (eq, neq, in, notIn, lt, lte, gt, gte)
- Reaction, state and augmentation rule definitions
- The rule index and the custom action registry

Invariants:
    - Path expressions are parsed once, at rule construction
    - Unresolvable paths yield NOT_FOUND and never raise
    - Rules are registered before the index is frozen
"""

from .actions import CustomActionRegistry
from .conditions import Condition, Operator, evaluate_all, parse_conditions
from .index import Reach, RuleIndex
from .paths import NOT_FOUND, PathExpr, ResolutionContext, Selector, parse_path, resolve
from .types import (
    Action,
    AugmentationRule,
    ChildRequirement,
    Context,
    CustomAction,
    ReactionRule,
    Scope,
    Selection,
    SetAction,
    StateEffect,
    StateRule,
    Target,
)

__all__ = [
    # Paths
    "NOT_FOUND",
    "PathExpr",
    "ResolutionContext",
    "Selector",
    "parse_path",
    "resolve",
    # Conditions
    "Condition",
    "Operator",
    "evaluate_all",
    "parse_conditions",
    # Rules
    "Action",
    "AugmentationRule",
    "ChildRequirement",
    "Context",
    "CustomAction",
    "ReactionRule",
    "Scope",
    "Selection",
    "SetAction",
    "StateEffect",
    "StateRule",
    "Target",
    # Registries
    "CustomActionRegistry",
    "Reach",
    "RuleIndex",
]
