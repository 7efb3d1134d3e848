"""
Collaborator policies consulted by the notification core.

The host application implements these protocols to plug in its own rules:
- GovernancePolicy: which entities may be targeted, which follows need
  approval and who approves them
- RecipientExpansionPolicy: turns a logical recipient (e.g. a team) into
  concrete inbox owners

Invariants:
    - Policies are read-only from the core's point of view
    - Exceptions raised by a policy propagate to the caller unchanged

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods with a default behavior in StaticGovernancePolicy
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol, runtime_checkable

from .entities import EntityRef, RelationshipKind


@runtime_checkable
class GovernancePolicy(Protocol):
    """Governance decisions about entities and follow requests."""

    @abstractmethod
    async def is_targetable(self, tenant_id: str, entity: EntityRef) -> bool:
        """Check whether an entity may be the subject of activities.

        Private objects should return False.
        """
        ...

    @abstractmethod
    async def requires_approval(
        self,
        tenant_id: str,
        requester: EntityRef,
        target: EntityRef,
        kind: RelationshipKind,
    ) -> bool:
        """Check whether following/subscribing to `target` needs approval."""
        ...

    @abstractmethod
    async def get_approvers(self, tenant_id: str, target: EntityRef) -> list[EntityRef]:
        """Get the inbox owners who may approve requests for `target`.

        Usually the owner profile(s) and/or moderator profile(s).
        """
        ...


@runtime_checkable
class RecipientExpansionPolicy(Protocol):
    """Expands a logical recipient into concrete inbox owners."""

    @abstractmethod
    async def expand(self, tenant_id: str, recipient: EntityRef) -> list[EntityRef]:
        """Expand a recipient (may return just the recipient itself)."""
        ...


class DefaultRecipientExpansionPolicy:
    """Identity expansion: every recipient is its own inbox owner."""

    async def expand(self, tenant_id: str, recipient: EntityRef) -> list[EntityRef]:
        return [recipient]


class StaticGovernancePolicy:
    """In-process governance policy configured up front.

    Everything is targetable and nothing requires approval unless
    configured otherwise. Entities are matched by canonical key.

    Example:
        >>> policy = StaticGovernancePolicy()
        >>> policy.set_requires_approval(private_profile)
        >>> policy.set_approvers(private_profile, private_profile)
    """

    def __init__(self) -> None:
        self._non_targetable: set[str] = set()
        self._requires_approval: set[str] = set()
        self._approvers: dict[str, list[EntityRef]] = {}

    def set_non_targetable(self, entity: EntityRef) -> None:
        self._non_targetable.add(entity.key)

    def set_requires_approval(self, target: EntityRef) -> None:
        self._requires_approval.add(target.key)

    def set_approvers(self, target: EntityRef, *approvers: EntityRef) -> None:
        self._approvers[target.key] = list(approvers)

    async def is_targetable(self, tenant_id: str, entity: EntityRef) -> bool:
        return entity.key not in self._non_targetable

    async def requires_approval(
        self,
        tenant_id: str,
        requester: EntityRef,
        target: EntityRef,
        kind: RelationshipKind,
    ) -> bool:
        return target.key in self._requires_approval

    async def get_approvers(self, tenant_id: str, target: EntityRef) -> list[EntityRef]:
        return list(self._approvers.get(target.key, []))
