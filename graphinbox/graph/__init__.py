"""
Relationship graph for graphinbox.

This module handles:
- Per-tenant SQLite store of relationship edges
- Edge filters (type keys, tags, visibility)
- Mute/block visibility decisions

Invariants:
    - At most one edge per (tenant, from, to, kind, scope)
    - Blocks are evaluated before mutes
    - Visibility decisions never write

How to change safely:
    - New relationship kinds need an explicit rule in the visibility engine
    - Keep filter normalization in sync with filter matching
"""

from .filters import RelationshipFilter, filter_matches
from .relationship_store import RelationshipEdge, RelationshipGraphStore
from .visibility import VisibilityDecision, VisibilityDecisionEngine, scope_matches

__all__ = [
    "RelationshipFilter",
    "filter_matches",
    "RelationshipEdge",
    "RelationshipGraphStore",
    "VisibilityDecision",
    "VisibilityDecisionEngine",
    "scope_matches",
]
