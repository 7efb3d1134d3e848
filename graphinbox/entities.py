"""
Shared domain types for graphinbox.

Defines the entity reference used everywhere an actor, target, owner or
recipient is named, plus the read-only Activity input and the enums shared
by the graph and inbox modules.

Invariants:
    - EntityRef identity is (kind, type, id) after trim + lowercase
    - display_name and meta never take part in equality or hashing
    - Tenant ids are compared after trim + lowercase

How to change safely:
    - Never change the canonical key format; stored edges and inbox
      indexes are keyed by it
    - New enum members must keep existing string values
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

MAX_TENANT_ID_LENGTH = 100


class Visibility(Enum):
    """Visibility level of an activity."""

    PUBLIC = "Public"
    INTERNAL = "Internal"
    PRIVATE = "Private"


class RelationshipKind(Enum):
    """Kinds of directed relationship edges."""

    FOLLOW = "Follow"
    MUTE = "Mute"
    BLOCK = "Block"
    SUBSCRIBE = "Subscribe"


class RelationshipScope(Enum):
    """Which part of an activity an edge's `to` entity is matched against."""

    ACTOR_ONLY = "ActorOnly"
    TARGET_ONLY = "TargetOnly"
    OWNER_ONLY = "OwnerOnly"
    ANY = "Any"


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def normalize_tenant_id(tenant_id: str | None) -> str:
    """Normalize a tenant id (trim + lowercase)."""
    return (tenant_id or "").strip().lower()


def entity_key(entity: EntityRef) -> str:
    """Build the canonical comparison key for an entity.

    Format: "{kind}|{type}|{id}", each part trimmed and lowercased.

    Example:
        >>> entity_key(EntityRef(kind=" USER", type="User", id="U_1"))
        'user|user|u_1'
    """
    kind = (entity.kind or "").strip().lower()
    type_ = (entity.type or "").strip().lower()
    id_ = (entity.id or "").strip().lower()
    return f"{kind}|{type_}|{id_}"


@dataclass(frozen=True, eq=False)
class EntityRef:
    """Reference to an entity in the tenant graph.

    Attributes:
        kind: Entity kind (e.g. "identity")
        type: Entity type (e.g. "Profile")
        id: Entity identifier
        display_name: Optional human readable name
        meta: Optional free-form metadata
    """

    kind: str
    type: str
    id: str
    display_name: str | None = None
    meta: dict[str, Any] | None = None

    @property
    def key(self) -> str:
        return entity_key(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EntityRef):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def normalized(self) -> EntityRef:
        """Return a copy with whitespace trimmed (case is preserved)."""
        return replace(
            self,
            kind=(self.kind or "").strip(),
            type=(self.type or "").strip(),
            id=(self.id or "").strip(),
            display_name=self.display_name.strip() if self.display_name else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        data: dict[str, Any] = {"kind": self.kind, "type": self.type, "id": self.id}
        if self.display_name is not None:
            data["display_name"] = self.display_name
        if self.meta is not None:
            data["meta"] = self.meta
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityRef:
        """Create from dictionary."""
        return cls(
            kind=data.get("kind", ""),
            type=data.get("type", ""),
            id=data.get("id", ""),
            display_name=data.get("display_name"),
            meta=data.get("meta"),
        )

    def __str__(self) -> str:
        return f"{self.type}/{self.id}"


@dataclass
class Activity:
    """An activity published by the upstream producer.

    Read-only input: the core never mutates it. The producer has already
    validated it and assigned its id.

    Attributes:
        id: Activity identifier
        tenant_id: Tenant identifier
        type_key: Dotted activity type (e.g. "status.posted")
        actor: Who performed the activity
        owner: Optional owner of the object acted upon
        targets: Entities the activity is about
        visibility: Activity visibility
        payload: Producer payload, passed through untouched
        tags: Free-form tags used by relationship filters
        occurred_at: When it happened (Unix ms)
        summary: Optional short text used as the inbox item title
    """

    id: str
    tenant_id: str
    type_key: str
    actor: EntityRef
    owner: EntityRef | None = None
    targets: list[EntityRef] = field(default_factory=list)
    visibility: Visibility = Visibility.PUBLIC
    payload: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    occurred_at: int | None = None
    summary: str | None = None


def validate_tenant_id(tenant_id: str | None, errors: list[str]) -> None:
    if not tenant_id or not tenant_id.strip():
        errors.append("tenant_id is required")
    elif len(tenant_id.strip()) > MAX_TENANT_ID_LENGTH:
        errors.append(f"tenant_id exceeds {MAX_TENANT_ID_LENGTH} characters")


def validate_entity_ref(entity: EntityRef | None, path: str, errors: list[str]) -> None:
    """Append errors for a missing entity or missing identity fields."""
    if entity is None:
        errors.append(f"{path} is required")
        return

    for name in ("kind", "type", "id"):
        value = getattr(entity, name)
        if not value or not value.strip():
            errors.append(f"{path}.{name} is required")


def validate_activity(activity: Activity) -> list[str]:
    """Validate the fields the core relies on.

    Args:
        activity: Activity to check

    Returns:
        List of validation errors (empty if valid)
    """
    errors: list[str] = []
    validate_tenant_id(activity.tenant_id, errors)

    if not activity.id or not activity.id.strip():
        errors.append("activity.id is required")
    if not activity.type_key or not activity.type_key.strip():
        errors.append("activity.type_key is required")

    validate_entity_ref(activity.actor, "activity.actor", errors)
    if activity.owner is not None:
        validate_entity_ref(activity.owner, "activity.owner", errors)
    for i, target in enumerate(activity.targets):
        validate_entity_ref(target, f"activity.targets[{i}]", errors)

    return errors
