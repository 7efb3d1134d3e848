"""
Error types for graphinbox.

This module defines all exception types raised by the core:
- GraphInboxError: Base exception
- ValidationError: Malformed input, raised before any store access
- PolicyViolationError: Governance refused an entity
- NotFoundError: A write path referenced a missing resource
- ConflictError: A state transition is not allowed from the current state
- TransientStoreError: The store could not complete the call right now

Invariants:
    - All errors inherit from GraphInboxError
    - Errors include context for debugging
    - Read paths return None for missing resources instead of raising
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .entities import EntityRef


class GraphInboxError(Exception):
    """Base exception for all graphinbox errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "GRAPHINBOX_ERROR"
        self.details = details or {}


class ValidationError(GraphInboxError):
    """Input validation failed.

    Raised when:
    - Tenant id is missing or too long
    - An entity reference is missing kind, type or id
    - A filter entry exceeds its length limit
    - A query limit or cursor is invalid
    """

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"errors": errors or []},
        )
        self.errors = errors or []

    @classmethod
    def from_errors(cls, errors: list[str]) -> ValidationError:
        return cls(f"Validation failed: {'; '.join(errors)}", errors=errors)


class PolicyViolationError(GraphInboxError):
    """An entity is not allowed by the governance policy.

    Aborts the whole operation; nothing is written.

    Attributes:
        entity: The offending entity
        reason: Why it was refused
    """

    def __init__(self, entity: EntityRef, reason: str) -> None:
        super().__init__(
            f"Policy violation for entity {entity.type}/{entity.id}: {reason}",
            code="POLICY_VIOLATION",
            details={"entity": entity.key, "reason": reason},
        )
        self.entity = entity
        self.reason = reason


class NotFoundError(GraphInboxError):
    """Resource not found on a path that requires it to exist.

    Raised when:
    - Approving or denying an unknown follow request
    - Marking or archiving an unknown inbox item
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(GraphInboxError):
    """State transition not allowed.

    Raised when deciding on a follow request that is no longer pending.
    """

    def __init__(
        self,
        message: str,
        resource_id: str,
        current_status: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={
                "resource_id": resource_id,
                "current_status": current_status,
            },
        )
        self.resource_id = resource_id
        self.current_status = current_status


class TransientStoreError(GraphInboxError):
    """The store failed in a way that is safe to retry.

    Raised when SQLite reports a locked or busy database. Every mutating
    operation is idempotent, so callers may retry blindly.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="TRANSIENT_STORE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation
