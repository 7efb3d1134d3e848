"""
Approvals for graphinbox - follow/subscribe request workflow.

This module handles:
- Per-tenant SQLite store of follow requests with idempotency keys
- Compare-and-set status transitions
- Auto-approval, approver notification and decisions

Invariants:
    - Pending is the only non-terminal status
    - Approval always creates the relationship edge

How to change safely:
    - Keep transitions inside FollowRequestStore.transition
    - Test concurrent decisions on one request
"""

from .request_store import (
    FollowRequest,
    FollowRequestStatus,
    FollowRequestStore,
    TERMINAL_STATUSES,
)
from .workflow import FollowRequestWorkflow

__all__ = [
    "FollowRequest",
    "FollowRequestStatus",
    "FollowRequestStore",
    "TERMINAL_STATUSES",
    "FollowRequestWorkflow",
]
