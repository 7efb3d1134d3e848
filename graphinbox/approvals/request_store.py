"""
Per-tenant SQLite store for follow/subscribe requests.

Invariants:
    - (tenant_id, idempotency key) is unique when a key is present
    - Without a key, at most one Pending request exists per requester,
      target, kind and scope
    - Status only moves Pending -> Approved | Denied | Cancelled
    - Transitions are compare-and-set inside BEGIN IMMEDIATE, so two
      concurrent decisions on one request cannot both win

How to change safely:
    - Keep idempotency keys compared trimmed and lowercased
    - New statuses must be added to TERMINAL_STATUSES if they are final

Table schema:
    follow_requests:
        - tenant_id TEXT, request_id TEXT (PRIMARY KEY together)
        - requester_key TEXT, requester_json TEXT
        - target_key TEXT, target_json TEXT
        - requested_kind TEXT, scope TEXT, filter_json TEXT
        - status TEXT
        - decided_by_json TEXT, decided_at INTEGER, decision_reason TEXT
        - idempotency_key TEXT, idempotency_index_key TEXT
        - created_at INTEGER (Unix ms)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from ..entities import (
    EntityRef,
    RelationshipKind,
    RelationshipScope,
    normalize_tenant_id,
    now_ms,
    validate_entity_ref,
    validate_tenant_id,
)
from ..errors import ConflictError, NotFoundError
from ..graph import RelationshipFilter
from ..storage import TenantDatabase

logger = logging.getLogger(__name__)

REQUESTABLE_KINDS = (RelationshipKind.FOLLOW, RelationshipKind.SUBSCRIBE)


class FollowRequestStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    DENIED = "Denied"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = frozenset(
    {FollowRequestStatus.APPROVED, FollowRequestStatus.DENIED, FollowRequestStatus.CANCELLED}
)


@dataclass
class FollowRequest:
    """A request by `requester` to follow or subscribe to `target`.

    Attributes:
        tenant_id: Tenant identifier
        requester: Entity asking to follow
        target: Entity to be followed
        requested_kind: Follow or Subscribe
        scope: Scope of the edge created on approval
        filter: Filter of the edge created on approval
        status: Current status
        decided_by: Who approved, denied or cancelled
        decided_at: When the decision was made (Unix ms)
        decision_reason: Optional free-text reason
        idempotency_key: Client key making create idempotent
        id: Request identifier (generated on create if empty)
        created_at: Creation timestamp (Unix ms)
    """

    tenant_id: str
    requester: EntityRef
    target: EntityRef
    requested_kind: RelationshipKind = RelationshipKind.FOLLOW
    scope: RelationshipScope = RelationshipScope.ANY
    filter: RelationshipFilter | None = None
    status: FollowRequestStatus = FollowRequestStatus.PENDING
    decided_by: EntityRef | None = None
    decided_at: int | None = None
    decision_reason: str | None = None
    idempotency_key: str | None = None
    id: str = ""
    created_at: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "requester": self.requester.to_dict(),
            "target": self.target.to_dict(),
            "requested_kind": self.requested_kind.value,
            "scope": self.scope.value,
            "filter": self.filter.to_dict() if self.filter else None,
            "status": self.status.value,
            "decided_by": self.decided_by.to_dict() if self.decided_by else None,
            "decided_at": self.decided_at,
            "decision_reason": self.decision_reason,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
        }


def normalize_request(request: FollowRequest) -> FollowRequest:
    return replace(
        request,
        tenant_id=normalize_tenant_id(request.tenant_id),
        requester=request.requester.normalized() if request.requester is not None else None,
        target=request.target.normalized() if request.target is not None else None,
        filter=request.filter.normalized() if request.filter is not None else None,
        idempotency_key=(request.idempotency_key or "").strip() or None,
        decision_reason=(request.decision_reason or "").strip() or None,
    )


def validate_request(request: FollowRequest) -> list[str]:
    """Validate a normalized follow request.

    Returns:
        List of validation errors (empty if valid)
    """
    errors: list[str] = []
    validate_tenant_id(request.tenant_id, errors)
    validate_entity_ref(request.requester, "requester", errors)
    validate_entity_ref(request.target, "target", errors)

    if request.requested_kind not in REQUESTABLE_KINDS:
        errors.append("requested_kind must be Follow or Subscribe")
    if not isinstance(request.scope, RelationshipScope):
        errors.append(f"scope '{request.scope}' is not a valid RelationshipScope")
    if request.filter is not None:
        errors.extend(request.filter.validate())

    return errors


class FollowRequestStore(TenantDatabase):
    """Per-tenant SQLite store for follow requests."""

    DB_PREFIX = "requests"
    SCHEMA = """
        CREATE TABLE IF NOT EXISTS follow_requests (
            tenant_id TEXT NOT NULL,
            request_id TEXT NOT NULL,
            requester_key TEXT NOT NULL,
            requester_json TEXT NOT NULL,
            target_key TEXT NOT NULL,
            target_json TEXT NOT NULL,
            requested_kind TEXT NOT NULL,
            scope TEXT NOT NULL,
            filter_json TEXT,
            status TEXT NOT NULL,
            decided_by_json TEXT,
            decided_at INTEGER,
            decision_reason TEXT,
            idempotency_key TEXT,
            idempotency_index_key TEXT,
            created_at INTEGER NOT NULL,
            PRIMARY KEY (tenant_id, request_id)
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_requests_idempotency
            ON follow_requests(tenant_id, idempotency_index_key)
            WHERE idempotency_index_key IS NOT NULL;

        CREATE INDEX IF NOT EXISTS idx_requests_target_status
            ON follow_requests(tenant_id, target_key, status, created_at);
    """

    async def get(self, tenant_id: str, request_id: str) -> FollowRequest | None:
        """Get a request by id.

        Returns:
            FollowRequest or None if not found
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not request_id or not request_id.strip():
            return None

        with self._get_connection(tenant) as conn:
            return self._fetch(conn, tenant, request_id.strip())

    async def find_by_idempotency_key(
        self, tenant_id: str, idempotency_key: str
    ) -> FollowRequest | None:
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not idempotency_key or not idempotency_key.strip():
            return None

        with self._get_connection(tenant) as conn:
            row = conn.execute(
                """
                SELECT * FROM follow_requests
                WHERE tenant_id = ? AND idempotency_index_key = ?
                """,
                (tenant, idempotency_key.strip().lower()),
            ).fetchone()
            return self._row_to_request(row) if row else None

    async def insert(self, request: FollowRequest) -> tuple[FollowRequest, bool]:
        """Insert a new request unless its idempotency key is taken.

        A Pending request without an idempotency key is deduplicated against
        an existing Pending request with the same requester, target, kind and
        scope.

        Args:
            request: Normalized request with id and created_at set

        Returns:
            Tuple of (stored request, created). When the idempotency key is
            taken, or a matching request is already pending, the stored
            request is returned with created=False.
        """
        index_key = request.idempotency_key.lower() if request.idempotency_key else None

        with self._get_connection(request.tenant_id) as conn:
            with self._transaction(conn):
                if index_key:
                    row = conn.execute(
                        """
                        SELECT * FROM follow_requests
                        WHERE tenant_id = ? AND idempotency_index_key = ?
                        """,
                        (request.tenant_id, index_key),
                    ).fetchone()
                    if row:
                        return self._row_to_request(row), False
                elif request.status == FollowRequestStatus.PENDING:
                    row = conn.execute(
                        """
                        SELECT * FROM follow_requests
                        WHERE tenant_id = ? AND requester_key = ? AND target_key = ?
                          AND requested_kind = ? AND scope = ? AND status = ?
                        ORDER BY created_at, request_id
                        LIMIT 1
                        """,
                        (
                            request.tenant_id,
                            request.requester.key,
                            request.target.key,
                            request.requested_kind.value,
                            request.scope.value,
                            FollowRequestStatus.PENDING.value,
                        ),
                    ).fetchone()
                    if row:
                        return self._row_to_request(row), False

                conn.execute(
                    """
                    INSERT INTO follow_requests
                    (tenant_id, request_id, requester_key, requester_json,
                     target_key, target_json, requested_kind, scope, filter_json,
                     status, decided_by_json, decided_at, decision_reason,
                     idempotency_key, idempotency_index_key, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        request.tenant_id,
                        request.id,
                        request.requester.key,
                        json.dumps(request.requester.to_dict()),
                        request.target.key,
                        json.dumps(request.target.to_dict()),
                        request.requested_kind.value,
                        request.scope.value,
                        json.dumps(request.filter.to_dict()) if request.filter else None,
                        request.status.value,
                        json.dumps(request.decided_by.to_dict()) if request.decided_by else None,
                        request.decided_at,
                        request.decision_reason,
                        request.idempotency_key,
                        index_key,
                        request.created_at,
                    ),
                )

        logger.debug(
            "Inserted follow request",
            extra={
                "tenant_id": request.tenant_id,
                "request_id": request.id,
                "status": request.status.value,
            },
        )
        return request, True

    async def transition(
        self,
        tenant_id: str,
        request_id: str,
        to_status: FollowRequestStatus,
        decided_by: EntityRef | None = None,
        reason: str | None = None,
        expected: FollowRequestStatus = FollowRequestStatus.PENDING,
    ) -> FollowRequest:
        """Compare-and-set a request's status.

        Args:
            tenant_id: Tenant identifier
            request_id: Request identifier
            to_status: New status
            decided_by: Who made the decision
            reason: Optional decision reason
            expected: Status the request must currently have

        Returns:
            The updated request

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the request is not in the expected status
        """
        tenant = normalize_tenant_id(tenant_id)
        request_id = (request_id or "").strip()
        decided_at = now_ms()

        with self._get_connection(tenant) as conn:
            with self._transaction(conn):
                current = self._fetch(conn, tenant, request_id)
                if current is None:
                    raise NotFoundError(
                        f"Follow request not found: {request_id}",
                        resource_type="follow_request",
                        resource_id=request_id,
                    )
                if current.status != expected:
                    raise ConflictError(
                        f"Follow request {request_id} is {current.status.value}, "
                        f"expected {expected.value}",
                        resource_id=request_id,
                        current_status=current.status.value,
                    )

                conn.execute(
                    """
                    UPDATE follow_requests
                    SET status = ?, decided_by_json = ?, decided_at = ?, decision_reason = ?
                    WHERE tenant_id = ? AND request_id = ? AND status = ?
                    """,
                    (
                        to_status.value,
                        json.dumps(decided_by.to_dict()) if decided_by else None,
                        decided_at,
                        reason,
                        tenant,
                        request_id,
                        expected.value,
                    ),
                )

        logger.debug(
            "Follow request transitioned",
            extra={
                "tenant_id": tenant,
                "request_id": request_id,
                "from_status": expected.value,
                "to_status": to_status.value,
            },
        )
        return replace(
            current,
            status=to_status,
            decided_by=decided_by,
            decided_at=decided_at,
            decision_reason=reason,
        )

    async def reopen(self, tenant_id: str, request_id: str) -> None:
        """Return an approved request to Pending after its edge write failed."""
        tenant = normalize_tenant_id(tenant_id)
        with self._get_connection(tenant) as conn:
            conn.execute(
                """
                UPDATE follow_requests
                SET status = ?, decided_by_json = NULL, decided_at = NULL, decision_reason = NULL
                WHERE tenant_id = ? AND request_id = ? AND status = ?
                """,
                (
                    FollowRequestStatus.PENDING.value,
                    tenant,
                    request_id,
                    FollowRequestStatus.APPROVED.value,
                ),
            )

    async def list_pending_for_target(
        self, tenant_id: str, target: EntityRef, limit: int = 200
    ) -> list[FollowRequest]:
        """Pending requests for a target, newest first."""
        tenant = normalize_tenant_id(tenant_id)
        if not tenant:
            return []

        with self._get_connection(tenant) as conn:
            cursor = conn.execute(
                """
                SELECT * FROM follow_requests
                WHERE tenant_id = ? AND target_key = ? AND status = ?
                ORDER BY created_at DESC, request_id DESC
                LIMIT ?
                """,
                (tenant, target.key, FollowRequestStatus.PENDING.value, limit),
            )
            return [self._row_to_request(row) for row in cursor.fetchall()]

    def _fetch(self, conn: sqlite3.Connection, tenant: str, request_id: str) -> FollowRequest | None:
        row = conn.execute(
            "SELECT * FROM follow_requests WHERE tenant_id = ? AND request_id = ?",
            (tenant, request_id),
        ).fetchone()
        return self._row_to_request(row) if row else None

    def _row_to_request(self, row: sqlite3.Row) -> FollowRequest:
        """Convert database row to FollowRequest."""
        return FollowRequest(
            tenant_id=row["tenant_id"],
            requester=EntityRef.from_dict(json.loads(row["requester_json"])),
            target=EntityRef.from_dict(json.loads(row["target_json"])),
            requested_kind=RelationshipKind(row["requested_kind"]),
            scope=RelationshipScope(row["scope"]),
            filter=(
                RelationshipFilter.from_dict(json.loads(row["filter_json"]))
                if row["filter_json"]
                else None
            ),
            status=FollowRequestStatus(row["status"]),
            decided_by=(
                EntityRef.from_dict(json.loads(row["decided_by_json"]))
                if row["decided_by_json"]
                else None
            ),
            decided_at=row["decided_at"],
            decision_reason=row["decision_reason"],
            idempotency_key=row["idempotency_key"],
            id=row["request_id"],
            created_at=row["created_at"],
        )
