"""
Follow/subscribe request workflow.

State machine:

    create ──▶ Pending ──approve──▶ Approved   (edge upserted)
       │          ├─────deny─────▶ Denied
       │          └────cancel────▶ Cancelled  (requester only)
       └─(no approval required)──▶ Approved   (edge upserted)

Invariants:
    - A repeated create with the same idempotency key returns the stored
      request without consulting governance again
    - A keyless create that needs approval returns the matching request
      that is already pending instead of notifying approvers again
    - Terminal requests never change; deciding on them is a ConflictError
    - An approved request always has its relationship edge
    - Inbox items for approvers and requesters go through the fan-out
      delivery primitive, so retries never duplicate them
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from ..entities import (
    EntityRef,
    normalize_tenant_id,
    now_ms,
    validate_entity_ref,
    validate_tenant_id,
)
from ..errors import ConflictError, NotFoundError, PolicyViolationError, ValidationError
from ..graph import RelationshipEdge, RelationshipGraphStore
from ..inbox import InboxEventRef, InboxFanoutPipeline, InboxItem, InboxItemKind
from ..policies import GovernancePolicy
from .request_store import (
    FollowRequest,
    FollowRequestStatus,
    FollowRequestStore,
    normalize_request,
    validate_request,
)

logger = logging.getLogger(__name__)

REQUEST_EVENT_KIND = "follow-request"


def _display(entity: EntityRef) -> str:
    return entity.display_name or entity.id


def _decision_tenant(tenant_id: str, actor: EntityRef, path: str) -> str:
    """Validate the inputs of a decision and return the normalized tenant."""
    errors: list[str] = []
    validate_tenant_id(tenant_id, errors)
    validate_entity_ref(actor, path, errors)
    if errors:
        raise ValidationError.from_errors(errors)
    return normalize_tenant_id(tenant_id)


class FollowRequestWorkflow:
    """Creates and decides follow/subscribe requests.

    Example:
        >>> workflow = FollowRequestWorkflow(requests, graph, fanout, governance)
        >>> request = await workflow.create(FollowRequest(
        ...     tenant_id="acme", requester=alice, target=bob,
        ...     idempotency_key="alice-follows-bob",
        ... ))
        >>> await workflow.approve("acme", request.id, decided_by=bob)
    """

    def __init__(
        self,
        requests: FollowRequestStore,
        graph: RelationshipGraphStore,
        fanout: InboxFanoutPipeline,
        governance: GovernancePolicy,
    ) -> None:
        self.requests = requests
        self.graph = graph
        self.fanout = fanout
        self.governance = governance

    async def create(self, request: FollowRequest) -> FollowRequest:
        """Create a follow request, auto-approving when governance allows.

        Args:
            request: Request to create

        Returns:
            The stored request (Approved or Pending), or the original request
            if the idempotency key was already used or an identical keyless
            request is still pending

        Raises:
            ValidationError: If the request is malformed
            PolicyViolationError: If the target is not targetable
        """
        request = normalize_request(request)
        errors = validate_request(request)
        if errors:
            raise ValidationError.from_errors(errors)

        if request.idempotency_key:
            existing = await self.requests.find_by_idempotency_key(
                request.tenant_id, request.idempotency_key
            )
            if existing is not None:
                logger.debug(
                    "Follow request replayed",
                    extra={"tenant_id": request.tenant_id, "request_id": existing.id},
                )
                return existing

        tenant = request.tenant_id
        if not await self.governance.is_targetable(tenant, request.target):
            raise PolicyViolationError(request.target, "NOT_TARGETABLE")

        request = replace(
            request,
            id=(request.id or "").strip() or str(uuid.uuid4()),
            created_at=request.created_at or now_ms(),
            decided_by=None,
            decided_at=None,
        )

        needs_approval = await self.governance.requires_approval(
            tenant, request.requester, request.target, request.requested_kind
        )

        if not needs_approval:
            await self._upsert_edge(request)
            request = replace(request, status=FollowRequestStatus.APPROVED, decided_at=now_ms())
            stored, created = await self.requests.insert(request)
            if created:
                logger.info(
                    "Follow request auto-approved",
                    extra={"tenant_id": tenant, "request_id": stored.id},
                )
                await self._notify_requester(
                    stored, "Your follow request was approved automatically."
                )
            return stored

        request = replace(request, status=FollowRequestStatus.PENDING)
        stored, created = await self.requests.insert(request)
        if not created:
            return stored

        approvers = await self.governance.get_approvers(tenant, stored.target)
        logger.info(
            "Follow request pending approval",
            extra={"tenant_id": tenant, "request_id": stored.id, "approvers": len(approvers)},
        )
        await self._notify_approvers(stored, approvers)
        return stored

    async def approve(
        self,
        tenant_id: str,
        request_id: str,
        decided_by: EntityRef,
        reason: str | None = None,
    ) -> FollowRequest:
        """Approve a pending request and create its relationship edge.

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the request is not pending
        """
        tenant = _decision_tenant(tenant_id, decided_by, "decided_by")
        approved = await self.requests.transition(
            tenant, request_id, FollowRequestStatus.APPROVED, decided_by, reason
        )

        try:
            await self._upsert_edge(approved)
        except Exception:
            await self.requests.reopen(tenant, approved.id)
            raise

        logger.info(
            "Follow request approved",
            extra={"tenant_id": tenant, "request_id": approved.id, "decided_by": decided_by.key},
        )
        await self._notify_requester(approved, reason or "Your follow request was approved.")
        return approved

    async def deny(
        self,
        tenant_id: str,
        request_id: str,
        decided_by: EntityRef,
        reason: str | None = None,
    ) -> FollowRequest:
        """Deny a pending request. No edge is created.

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the request is not pending
        """
        tenant = _decision_tenant(tenant_id, decided_by, "decided_by")
        denied = await self.requests.transition(
            tenant, request_id, FollowRequestStatus.DENIED, decided_by, reason
        )

        logger.info(
            "Follow request denied",
            extra={"tenant_id": tenant, "request_id": denied.id, "decided_by": decided_by.key},
        )
        await self._notify_requester(denied, reason or "Your follow request was denied.")
        return denied

    async def cancel(
        self,
        tenant_id: str,
        request_id: str,
        cancelled_by: EntityRef,
    ) -> FollowRequest:
        """Withdraw a pending request. Only the requester may cancel.

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the request is not pending or the caller is
                not the requester
        """
        tenant = _decision_tenant(tenant_id, cancelled_by, "cancelled_by")
        current = await self.requests.get(tenant, request_id)
        if current is None:
            raise NotFoundError(
                f"Follow request not found: {request_id}",
                resource_type="follow_request",
                resource_id=request_id,
            )
        if current.requester != cancelled_by:
            raise ConflictError(
                f"Only the requester may cancel follow request {request_id}",
                resource_id=request_id,
                current_status=current.status.value,
            )

        cancelled = await self.requests.transition(
            tenant, request_id, FollowRequestStatus.CANCELLED, cancelled_by
        )
        logger.info(
            "Follow request cancelled",
            extra={"tenant_id": tenant, "request_id": cancelled.id},
        )
        return cancelled

    async def list_pending_for_target(self, tenant_id: str, target: EntityRef) -> list[FollowRequest]:
        return await self.requests.list_pending_for_target(tenant_id, target)

    async def _upsert_edge(self, request: FollowRequest) -> RelationshipEdge:
        return await self.graph.upsert(
            RelationshipEdge(
                tenant_id=request.tenant_id,
                from_=request.requester,
                to=request.target,
                kind=request.requested_kind,
                scope=request.scope,
                filter=request.filter,
                is_active=True,
            )
        )

    async def _notify_approvers(self, request: FollowRequest, approvers: list[EntityRef]) -> None:
        kind = request.requested_kind.value.lower()
        for approver in approvers:
            draft = InboxItem(
                tenant_id=request.tenant_id,
                recipient=approver,
                kind=InboxItemKind.REQUEST,
                event=InboxEventRef(
                    kind=REQUEST_EVENT_KIND,
                    id=request.id,
                    occurred_at=request.created_at,
                ),
                title=f"Follow request from {_display(request.requester)}",
                body=f"Requesting to {kind} {_display(request.target)}",
                targets=[request.requester, request.target],
                data={"request_id": request.id},
                dedup_key=f"follow-request:{request.id}:approver:{approver.key}",
            )
            await self._deliver(request, draft)

    async def _notify_requester(self, request: FollowRequest, message: str) -> None:
        draft = InboxItem(
            tenant_id=request.tenant_id,
            recipient=request.requester,
            kind=InboxItemKind.NOTIFICATION,
            event=InboxEventRef(
                kind=REQUEST_EVENT_KIND,
                id=request.id,
                occurred_at=request.decided_at or request.created_at,
            ),
            title=f"Follow request {request.status.value.lower()}",
            body=message,
            targets=[request.target],
            data={"request_id": request.id, "status": request.status.value},
            dedup_key=f"follow-request:{request.id}:result:{request.requester.key}",
        )
        await self._deliver(request, draft)

    async def _deliver(self, request: FollowRequest, draft: InboxItem) -> None:
        # The decision is committed before this runs; delivery errors are only logged.
        try:
            await self.fanout.deliver(request.tenant_id, draft)
        except Exception as e:
            logger.error(
                f"Failed to deliver follow request notification: {e}",
                extra={
                    "tenant_id": request.tenant_id,
                    "request_id": request.id,
                    "recipient": draft.recipient.key,
                },
                exc_info=True,
            )
