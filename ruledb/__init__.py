"""
RuleDB - declarative rule engine layered over a schema/data model.

This package evaluates three kinds of declarative rules against a live
record graph:
- Reaction rules: cross-entity side effects triggered by mutations
- State rules: per-field runtime flags ($state) computed from conditions
- Augmentation rules: cross-schema shape/validation for create/view/edit

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌──────────────────┐
    │  Mutation   │────▶│  RuleEngine  │────▶│ CascadeController│
    │  (host)     │     │  (ingress)   │     │  (BFS, depth)    │
    └─────────────┘     └──────┬───────┘     └────────┬─────────┘
                               │                      │
                 ┌─────────────┼──────────┐           ▼
                 ▼             ▼          ▼   ┌────────────────────┐
          ┌────────────┐ ┌──────────┐ ┌─────┐ │ ReactionDispatcher │
          │StateCompiler│ │Augment.  │ │Rule │ │ 1 index  2 conds   │
          │ ($state)    │ │Composer  │ │Index│ │ 3 resolve & act    │
          └────────────┘ └──────────┘ └─────┘ └─────────┬──────────┘
                                                        ▼
                                                 ┌────────────┐
                                                 │ DataAccess │
                                                 └────────────┘

Invariants:
    - Schemas and rules are registered before the engine is frozen
    - Rules that fail their conditions never trigger a data access call
    - $state is recomputed on every read/write and never cached
    - Cascades terminate: depth-limited and no-op on unchanged writes

How to change safely:
    - Add new operators to rules.conditions.Operator with tests
    - Keep state merge commutative (OR for booleans, intersection for sets)
    - New action kinds need a branch in ReactionDispatcher._execute

Version: see ruledb/_version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
