"""
NotificationService - the library boundary of graphinbox.

Producers and API layers call this service; it wires together the graph
store, visibility engine, recipient resolver, fan-out pipeline and follow
request workflow.

Invariants:
    - Every call normalizes the tenant id before touching a store
    - Malformed input raises ValidationError before any store access
    - Read paths return None for missing resources; write paths raise
      NotFoundError

How to change safely:
    - Keep this class thin; behavior belongs in the component modules
    - New operations must validate input the same way
"""

from __future__ import annotations

import logging

from .approvals import FollowRequest, FollowRequestStore, FollowRequestWorkflow
from .config import ServiceConfig
from .entities import Activity, EntityRef, normalize_tenant_id, validate_activity
from .errors import NotFoundError, ValidationError
from .graph import (
    RelationshipEdge,
    RelationshipGraphStore,
    VisibilityDecision,
    VisibilityDecisionEngine,
)
from .inbox import (
    FanoutResult,
    InboxFanoutPipeline,
    InboxItem,
    InboxItemStatus,
    InboxPage,
    InboxQuery,
    InboxStore,
    RecipientResolver,
)
from .policies import GovernancePolicy, RecipientExpansionPolicy

logger = logging.getLogger(__name__)


class NotificationService:
    """Notification core for one deployment (all tenants).

    Example:
        >>> service = NotificationService.from_config(config, governance)
        >>> result = await service.on_activity_published(activity)
        >>> page = await service.query_inbox(InboxQuery(tenant_id="acme", recipients=[me]))
    """

    def __init__(
        self,
        graph: RelationshipGraphStore,
        inbox: InboxStore,
        requests: FollowRequestStore,
        governance: GovernancePolicy,
        expansion: RecipientExpansionPolicy | None = None,
        fanout: InboxFanoutPipeline | None = None,
        edge_scan_limit: int = 200,
    ) -> None:
        self.graph = graph
        self.inbox = inbox
        self.requests = requests
        self.governance = governance

        self.visibility = VisibilityDecisionEngine(graph, edge_scan_limit=edge_scan_limit)
        self.resolver = RecipientResolver(graph, self.visibility, governance, expansion)
        self.fanout = fanout or InboxFanoutPipeline(inbox)
        self.workflow = FollowRequestWorkflow(requests, graph, self.fanout, governance)

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        governance: GovernancePolicy,
        expansion: RecipientExpansionPolicy | None = None,
    ) -> NotificationService:
        """Build the service and its SQLite stores from configuration."""
        storage = config.storage
        sqlite_args = (
            storage.data_dir,
            storage.wal_mode,
            storage.busy_timeout_ms,
            storage.cache_size_pages,
        )

        inbox = InboxStore(
            *sqlite_args,
            default_limit=config.inbox.default_limit,
            max_limit=config.inbox.max_limit,
        )
        fanout = InboxFanoutPipeline(
            inbox,
            max_concurrency=config.fanout.max_concurrency,
            max_retries=config.fanout.max_retries,
            retry_delay_ms=config.fanout.retry_delay_ms,
        )
        return cls(
            graph=RelationshipGraphStore(*sqlite_args),
            inbox=inbox,
            requests=FollowRequestStore(*sqlite_args),
            governance=governance,
            expansion=expansion,
            fanout=fanout,
            edge_scan_limit=config.fanout.edge_scan_limit,
        )

    async def on_activity_published(self, activity: Activity) -> FanoutResult:
        """Notify everyone who should hear about an activity.

        Args:
            activity: Published activity (read-only)

        Returns:
            FanoutResult with per-recipient outcomes and failures, including
            candidates whose expansion or visibility check failed

        Raises:
            ValidationError: If the activity is malformed
            PolicyViolationError: If an actor, target or owner is not
                targetable (nothing is written)
        """
        errors = validate_activity(activity)
        if errors:
            raise ValidationError.from_errors(errors)

        tenant = normalize_tenant_id(activity.tenant_id)
        logger.debug(
            "Activity published",
            extra={"tenant_id": tenant, "activity_id": activity.id, "type_key": activity.type_key},
        )
        resolution = await self.resolver.resolve_detailed(tenant, activity)
        result = await self.fanout.fan_out(tenant, activity, resolution.recipients)
        result.failed = resolution.failed + result.failed
        return result

    async def can_see(
        self, tenant_id: str, viewer: EntityRef, activity: Activity
    ) -> VisibilityDecision:
        return await self.visibility.can_see(tenant_id, viewer, activity)

    async def upsert_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        return await self.graph.upsert(edge)

    async def remove_relationship(self, tenant_id: str, edge_id: str) -> bool:
        return await self.graph.remove(tenant_id, edge_id)

    async def get_relationship(self, tenant_id: str, edge_id: str) -> RelationshipEdge | None:
        return await self.graph.get(tenant_id, edge_id)

    async def create_follow_request(self, request: FollowRequest) -> FollowRequest:
        return await self.workflow.create(request)

    async def approve_request(
        self,
        tenant_id: str,
        request_id: str,
        decided_by: EntityRef,
        reason: str | None = None,
    ) -> FollowRequest:
        return await self.workflow.approve(tenant_id, request_id, decided_by, reason)

    async def deny_request(
        self,
        tenant_id: str,
        request_id: str,
        decided_by: EntityRef,
        reason: str | None = None,
    ) -> FollowRequest:
        return await self.workflow.deny(tenant_id, request_id, decided_by, reason)

    async def cancel_request(
        self, tenant_id: str, request_id: str, cancelled_by: EntityRef
    ) -> FollowRequest:
        return await self.workflow.cancel(tenant_id, request_id, cancelled_by)

    async def get_request(self, tenant_id: str, request_id: str) -> FollowRequest | None:
        return await self.requests.get(tenant_id, request_id)

    async def list_pending_requests(self, tenant_id: str, target: EntityRef) -> list[FollowRequest]:
        return await self.workflow.list_pending_for_target(tenant_id, target)

    async def query_inbox(self, query: InboxQuery) -> InboxPage:
        """Read a page of inbox items, newest first.

        Raises:
            ValidationError: If the query, its limit or its cursor is invalid
        """
        return await self.inbox.query(query)

    async def get_inbox_item(self, tenant_id: str, item_id: str) -> InboxItem | None:
        return await self.inbox.get(tenant_id, item_id)

    async def mark_read(self, tenant_id: str, item_id: str) -> InboxItem:
        return await self._set_status(tenant_id, item_id, InboxItemStatus.READ)

    async def archive(self, tenant_id: str, item_id: str) -> InboxItem:
        return await self._set_status(tenant_id, item_id, InboxItemStatus.ARCHIVED)

    async def _set_status(
        self, tenant_id: str, item_id: str, status: InboxItemStatus
    ) -> InboxItem:
        if not normalize_tenant_id(tenant_id):
            raise ValidationError.from_errors(["tenant_id is required"])

        item = await self.inbox.update_status(tenant_id, item_id, status)
        if item is None:
            raise NotFoundError(
                f"Inbox item not found: {item_id}",
                resource_type="inbox_item",
                resource_id=item_id,
            )
        return item
