"""
graphinbox - Tenant-partitioned notification inbox over a relationship graph.

This package turns published activities into per-recipient inbox items:
- Relationship edges (follow, subscribe, mute, block) with scoped matching
- Recipient resolution gated by a governance policy
- Deduplicated, threaded inbox fan-out
- Follow/subscribe request approval workflow

Architecture:
    ┌──────────┐     ┌────────────────────┐     ┌──────────────────┐
    │ Producer │────▶│ RecipientResolver  │────▶│ InboxFanout      │
    │(activity)│     │ governance + graph │     │ (per recipient)  │
    └──────────┘     └─────────┬──────────┘     └────────┬─────────┘
                               │                         │
                               ▼                         ▼
                     ┌──────────────────┐      ┌──────────────────┐
                     │ SQLite (graph)   │      │ SQLite (inbox)   │
                     └──────────────────┘      └──────────────────┘
                               ▲
                     ┌─────────┴──────────┐
                     │ FollowRequest      │
                     │ workflow           │
                     └────────────────────┘

Invariants:
    - Every read and write is partitioned by tenant_id
    - Entity identity is (kind, type, id), case and whitespace insensitive
    - Fan-out is idempotent per (activity, recipient)
    - Only explicit status operations change an inbox item's status

How to change safely:
    - Keep dedup and thread key formats stable; stored items depend on them
    - New relationship kinds must be added to the visibility engine explicitly
    - Test retries against the dedup index before changing fan-out
"""

from ._version import __version__
from .approvals import FollowRequest, FollowRequestStatus
from .config import ServiceConfig
from .entities import (
    Activity,
    EntityRef,
    RelationshipKind,
    RelationshipScope,
    Visibility,
    entity_key,
)
from .errors import (
    ConflictError,
    GraphInboxError,
    NotFoundError,
    PolicyViolationError,
    TransientStoreError,
    ValidationError,
)
from .graph import RelationshipEdge, RelationshipFilter, VisibilityDecision
from .inbox import (
    FanoutResult,
    InboxItem,
    InboxItemKind,
    InboxItemStatus,
    InboxPage,
    InboxQuery,
)
from .policies import (
    DefaultRecipientExpansionPolicy,
    GovernancePolicy,
    RecipientExpansionPolicy,
    StaticGovernancePolicy,
)
from .service import NotificationService

__all__ = [
    "__version__",
    # Entities
    "Activity",
    "EntityRef",
    "RelationshipKind",
    "RelationshipScope",
    "Visibility",
    "entity_key",
    # Graph
    "RelationshipEdge",
    "RelationshipFilter",
    "VisibilityDecision",
    # Inbox
    "FanoutResult",
    "InboxItem",
    "InboxItemKind",
    "InboxItemStatus",
    "InboxPage",
    "InboxQuery",
    # Requests
    "FollowRequest",
    "FollowRequestStatus",
    # Policies
    "GovernancePolicy",
    "RecipientExpansionPolicy",
    "DefaultRecipientExpansionPolicy",
    "StaticGovernancePolicy",
    # Service
    "NotificationService",
    "ServiceConfig",
    # Errors
    "GraphInboxError",
    "ValidationError",
    "PolicyViolationError",
    "NotFoundError",
    "ConflictError",
    "TransientStoreError",
]
