"""
State module for RuleDB.

Computes `$state` (per-field immutable/required/hidden/enum subset flags)
from state rules over local, ancestor and descendant fields.
"""

from .compiler import Ancestry, CompiledState, FieldState, StateCompiler, mutually_exclusive

__all__ = [
    "Ancestry",
    "CompiledState",
    "FieldState",
    "StateCompiler",
    "mutually_exclusive",
]
