"""
Inbox for graphinbox - recipient resolution, fan-out and storage.

This module handles:
- Resolving who should be notified about an activity
- Per-recipient fan-out with dedup and thread grouping
- Per-tenant SQLite inbox with cursor pagination

Invariants:
    - Fan-out is idempotent per (activity, recipient)
    - Thread merges never change an item's status
    - Recipients are isolated: one failure never aborts the others

How to change safely:
    - Keep dedup/thread key formats stable
    - Verify idempotency by fanning out the same activity twice in tests
"""

from .cursor import decode_cursor, encode_cursor
from .fanout import (
    FanoutResult,
    InboxFanoutPipeline,
    RecipientDelivery,
    RecipientFailure,
    build_dedup_key,
    build_thread_key,
    type_key_prefix,
)
from .inbox_store import (
    InboxEventRef,
    InboxItem,
    InboxItemKind,
    InboxItemStatus,
    InboxPage,
    InboxQuery,
    InboxStore,
    UpsertOutcome,
)
from .recipients import RecipientResolution, RecipientResolver

__all__ = [
    "decode_cursor",
    "encode_cursor",
    "FanoutResult",
    "InboxFanoutPipeline",
    "RecipientDelivery",
    "RecipientFailure",
    "build_dedup_key",
    "build_thread_key",
    "type_key_prefix",
    "InboxEventRef",
    "InboxItem",
    "InboxItemKind",
    "InboxItemStatus",
    "InboxPage",
    "InboxQuery",
    "InboxStore",
    "UpsertOutcome",
    "RecipientResolution",
    "RecipientResolver",
]
