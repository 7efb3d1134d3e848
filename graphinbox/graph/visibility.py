"""
Mute/block visibility decisions.

Decides whether a viewer may see an activity given the viewer's own mute
and block edges. The engine only reads the graph.

Scope rules (edge.to compared by canonical key):
    ActorOnly   edge.to == activity.actor
    TargetOnly  edge.to is one of activity.targets
    OwnerOnly   activity.owner is set and edge.to == activity.owner
    Any         any of the above

Invariants:
    - Block edges are checked before mute edges
    - Inactive edges never deny
    - An edge denies only when both its scope and its filter match
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..entities import (
    Activity,
    EntityRef,
    RelationshipKind,
    RelationshipScope,
    normalize_tenant_id,
)
from .filters import filter_matches
from .relationship_store import RelationshipEdge, RelationshipGraphStore

logger = logging.getLogger(__name__)

# Evaluation order matters: a block wins over a mute on the same activity.
DENYING_KINDS = (RelationshipKind.BLOCK, RelationshipKind.MUTE)


@dataclass(frozen=True)
class VisibilityDecision:
    """Result of a visibility check.

    Attributes:
        allowed: Whether the viewer may see the activity
        reason: Kind of the denying edge ("Block" or "Mute") when denied
        matched_edge_id: Id of the denying edge when denied
    """

    allowed: bool
    reason: str | None = None
    matched_edge_id: str | None = None

    @classmethod
    def allow(cls) -> VisibilityDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, edge: RelationshipEdge) -> VisibilityDecision:
        return cls(allowed=False, reason=edge.kind.value, matched_edge_id=edge.id)


def scope_matches(edge: RelationshipEdge, activity: Activity) -> bool:
    """Check whether an edge's scope matches the activity's entities."""
    to_key = edge.to.key
    actor = activity.actor is not None and activity.actor.key == to_key
    target = any(t.key == to_key for t in activity.targets)
    owner = activity.owner is not None and activity.owner.key == to_key

    if edge.scope == RelationshipScope.ACTOR_ONLY:
        return actor
    if edge.scope == RelationshipScope.TARGET_ONLY:
        return target
    if edge.scope == RelationshipScope.OWNER_ONLY:
        return owner
    if edge.scope == RelationshipScope.ANY:
        return actor or target or owner
    return False


def _subjects(activity: Activity) -> list[EntityRef]:
    """Actor, targets and owner of an activity, deduplicated by key."""
    subjects: dict[str, EntityRef] = {}
    candidates = [activity.actor, *activity.targets, activity.owner]
    for entity in candidates:
        if entity is not None and entity.key not in subjects:
            subjects[entity.key] = entity
    return list(subjects.values())


class VisibilityDecisionEngine:
    """Evaluates a viewer's mute and block edges against an activity.

    Only edges leaving the viewer and pointing at one of the activity's
    subjects can match, so the engine looks those up directly instead of
    scanning every edge the viewer owns.
    """

    def __init__(self, graph: RelationshipGraphStore, edge_scan_limit: int = 200) -> None:
        self.graph = graph
        self.edge_scan_limit = edge_scan_limit

    async def can_see(
        self,
        tenant_id: str,
        viewer: EntityRef,
        activity: Activity,
    ) -> VisibilityDecision:
        """Decide whether `viewer` may see `activity`.

        Args:
            tenant_id: Tenant identifier
            viewer: Entity whose edges are evaluated
            activity: Activity being delivered

        Returns:
            VisibilityDecision (allowed, or denied with the matching edge)
        """
        tenant = normalize_tenant_id(tenant_id)
        subjects = _subjects(activity)

        for kind in DENYING_KINDS:
            for subject in subjects:
                edges = await self.graph.query(
                    tenant,
                    from_=viewer,
                    to=subject,
                    kind=kind,
                    is_active=True,
                    limit=self.edge_scan_limit,
                )
                for edge in edges:
                    if scope_matches(edge, activity) and filter_matches(edge.filter, activity):
                        logger.debug(
                            "Activity hidden from viewer",
                            extra={
                                "tenant_id": tenant,
                                "activity_id": activity.id,
                                "viewer": viewer.key,
                                "edge_id": edge.id,
                                "reason": edge.kind.value,
                            },
                        )
                        return VisibilityDecision.deny(edge)

        return VisibilityDecision.allow()
