"""
Recipient resolution for published activities.

Turns an activity into the list of inbox owners that should be notified:

1. Governance gate: actor, every target and the owner must be targetable.
   A refusal aborts resolution before anything is read or written.
2. Candidates: entities following or subscribed to the actor or to any
   target, plus entities subscribed to the owner.
3. Expansion through the recipient expansion policy.
4. Visibility: recipients who muted or blocked the activity are dropped.

Failures while expanding or checking one candidate are isolated to that
candidate and reported in the resolution; the other candidates still resolve.

Invariants:
    - Output is deduplicated by entity key, in discovery order
    - A denied visibility decision is not an error
    - Governance failures (refusal or exception) abort the whole activity
    - Expansion and visibility failures never abort other candidates
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..entities import Activity, EntityRef, RelationshipKind, normalize_tenant_id
from ..errors import PolicyViolationError
from ..graph import RelationshipGraphStore, VisibilityDecisionEngine
from ..policies import (
    DefaultRecipientExpansionPolicy,
    GovernancePolicy,
    RecipientExpansionPolicy,
)
from .fanout import RecipientFailure

logger = logging.getLogger(__name__)

AUDIENCE_KINDS = (RelationshipKind.FOLLOW, RelationshipKind.SUBSCRIBE)


@dataclass
class RecipientResolution:
    """Recipients of an activity plus the candidates that could not be resolved.

    Attributes:
        recipients: Deduplicated recipients allowed to see the activity
        failed: Candidates whose expansion or visibility check raised
    """

    recipients: list[EntityRef] = field(default_factory=list)
    failed: list[RecipientFailure] = field(default_factory=list)


class RecipientResolver:
    """Computes who should be notified about an activity."""

    def __init__(
        self,
        graph: RelationshipGraphStore,
        visibility: VisibilityDecisionEngine,
        governance: GovernancePolicy,
        expansion: RecipientExpansionPolicy | None = None,
    ) -> None:
        self.graph = graph
        self.visibility = visibility
        self.governance = governance
        self.expansion = expansion or DefaultRecipientExpansionPolicy()

    async def enforce_governance(self, tenant_id: str, activity: Activity) -> None:
        """Check that every subject of the activity is targetable.

        Raises:
            PolicyViolationError: On the first entity that is not targetable
        """
        checks: list[tuple[EntityRef, str]] = [(activity.actor, "Actor is not targetable")]
        checks.extend((target, "Target is not targetable") for target in activity.targets)
        if activity.owner is not None:
            checks.append((activity.owner, "Owner is not targetable"))

        for entity, reason in checks:
            if not await self.governance.is_targetable(tenant_id, entity):
                logger.info(
                    "Activity rejected by governance",
                    extra={
                        "tenant_id": tenant_id,
                        "activity_id": activity.id,
                        "entity": entity.key,
                    },
                )
                raise PolicyViolationError(entity, reason)

    async def candidates(self, tenant_id: str, activity: Activity) -> list[EntityRef]:
        """Followers and subscribers of the actor, targets and owner."""
        found: dict[str, EntityRef] = {}

        for subject in [activity.actor, *activity.targets]:
            for kind in AUDIENCE_KINDS:
                for entity in await self.graph.get_inbound_entities(tenant_id, subject, kind):
                    found.setdefault(entity.key, entity)

        if activity.owner is not None:
            owner_subscribers = await self.graph.get_inbound_entities(
                tenant_id, activity.owner, RelationshipKind.SUBSCRIBE
            )
            for entity in owner_subscribers:
                found.setdefault(entity.key, entity)

        return list(found.values())

    async def resolve(self, tenant_id: str, activity: Activity) -> list[EntityRef]:
        """Resolve the recipients of an activity.

        Candidates that fail to resolve are logged and left out; use
        resolve_detailed to receive them.

        Raises:
            PolicyViolationError: If an actor, target or owner is not targetable
        """
        resolution = await self.resolve_detailed(tenant_id, activity)
        return resolution.recipients

    async def resolve_detailed(self, tenant_id: str, activity: Activity) -> RecipientResolution:
        """Resolve the recipients of an activity, reporting per-candidate failures.

        Args:
            tenant_id: Tenant identifier
            activity: Published activity

        Returns:
            RecipientResolution with the recipients and the failed candidates

        Raises:
            PolicyViolationError: If an actor, target or owner is not targetable
        """
        tenant = normalize_tenant_id(tenant_id)
        await self.enforce_governance(tenant, activity)

        resolution = RecipientResolution()
        seen: set[str] = set()
        hidden = 0

        for candidate in await self.candidates(tenant, activity):
            try:
                expanded = await self.expansion.expand(tenant, candidate)
            except Exception as e:
                self._record_failure(resolution, tenant, activity, candidate, e)
                continue

            for recipient in expanded:
                if recipient.key in seen:
                    continue
                seen.add(recipient.key)
                try:
                    decision = await self.visibility.can_see(tenant, recipient, activity)
                except Exception as e:
                    self._record_failure(resolution, tenant, activity, recipient, e)
                    continue
                if decision.allowed:
                    resolution.recipients.append(recipient)
                else:
                    hidden += 1

        logger.debug(
            "Resolved recipients",
            extra={
                "tenant_id": tenant,
                "activity_id": activity.id,
                "recipients": len(resolution.recipients),
                "hidden": hidden,
                "failed": len(resolution.failed),
            },
        )
        return resolution

    def _record_failure(
        self,
        resolution: RecipientResolution,
        tenant_id: str,
        activity: Activity,
        recipient: EntityRef,
        error: Exception,
    ) -> None:
        logger.error(
            f"Failed to resolve recipient {recipient.key}: {error}",
            extra={
                "tenant_id": tenant_id,
                "activity_id": activity.id,
                "recipient": recipient.key,
            },
            exc_info=True,
        )
        resolution.failed.append(RecipientFailure(recipient, str(error)))
