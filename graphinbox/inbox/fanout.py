"""
Inbox fan-out pipeline.

Turns one activity into one inbox item per recipient. Each recipient is
handled independently and concurrently:

    dedup_key  = "activity:{activity_id}:recipient:{recipient_key}"
    thread_key = "target:{type}:{id}:type:{prefix}"   (first target)
               | "actor:{type}:{id}:type:{prefix}"    (no targets)

where prefix is the activity type key up to the first ".".

Invariants:
    - Writes for the same (tenant, recipient) are serialized by a keyed lock
      and by the store's immediate transaction
    - A failure for one recipient never aborts the others
    - Retrying a fan-out is a no-op for recipients already delivered
    - Task cancellation is never swallowed; committed items stay committed

How to change safely:
    - Changing key formats breaks dedup for activities already delivered
    - Keep per-recipient handlers catching Exception, not BaseException
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from ..entities import Activity, EntityRef, normalize_tenant_id
from ..errors import TransientStoreError
from .inbox_store import (
    InboxEventRef,
    InboxItem,
    InboxItemKind,
    InboxItemStatus,
    InboxStore,
    UpsertOutcome,
)

logger = logging.getLogger(__name__)

ACTIVITY_EVENT_KIND = "activity"


def type_key_prefix(type_key: str | None) -> str:
    """Substring of the type key before the first '.', or the whole key."""
    if not type_key:
        return ""
    head, dot, _ = type_key.partition(".")
    return head if dot and head else type_key


def build_dedup_key(activity_id: str, recipient: EntityRef) -> str:
    return f"activity:{activity_id}:recipient:{recipient.key}"


def build_thread_key(activity: Activity) -> str:
    """Group key for the activity: its first target, else its actor."""
    prefix = type_key_prefix(activity.type_key)
    if activity.targets:
        target = activity.targets[0]
        return f"target:{target.type.strip()}:{target.id.strip()}:type:{prefix}"
    actor = activity.actor
    return f"actor:{actor.type.strip()}:{actor.id.strip()}:type:{prefix}"


def build_notification(tenant_id: str, activity: Activity, recipient: EntityRef) -> InboxItem:
    """Build the inbox draft for one recipient of an activity.

    The actor is listed first among the item targets so clients can open it.
    """
    targets = list(activity.targets)
    if activity.actor not in targets:
        targets.insert(0, activity.actor)

    return InboxItem(
        tenant_id=tenant_id,
        recipient=recipient,
        kind=InboxItemKind.NOTIFICATION,
        status=InboxItemStatus.UNREAD,
        event=InboxEventRef(
            kind=ACTIVITY_EVENT_KIND,
            id=activity.id,
            type_key=activity.type_key,
            occurred_at=activity.occurred_at,
        ),
        title=activity.summary,
        targets=targets,
        dedup_key=build_dedup_key(activity.id, recipient),
        thread_key=build_thread_key(activity),
    )


@dataclass
class RecipientDelivery:
    recipient: EntityRef
    item_id: str
    outcome: UpsertOutcome


@dataclass
class RecipientFailure:
    recipient: EntityRef
    error: str
    attempts: int = 1


@dataclass
class FanoutResult:
    """Per-recipient summary of one fan-out.

    Attributes:
        activity_id: Activity that was fanned out
        delivered: Recipients whose item was created, merged or already present
        failed: Recipients whose delivery failed after retries
    """

    activity_id: str
    delivered: list[RecipientDelivery] = field(default_factory=list)
    failed: list[RecipientFailure] = field(default_factory=list)

    def _count(self, outcome: UpsertOutcome) -> int:
        return sum(1 for d in self.delivered if d.outcome == outcome)

    @property
    def created(self) -> int:
        return self._count(UpsertOutcome.CREATED)

    @property
    def merged(self) -> int:
        return self._count(UpsertOutcome.MERGED)

    @property
    def duplicates(self) -> int:
        return self._count(UpsertOutcome.DUPLICATE)

    @property
    def ok(self) -> bool:
        return not self.failed


class KeyedLocks:
    """asyncio locks created per key and discarded once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._users[key] = 0
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class InboxFanoutPipeline:
    """Delivers inbox items, one independent unit of work per recipient.

    Example:
        >>> pipeline = InboxFanoutPipeline(inbox_store, max_concurrency=16)
        >>> result = await pipeline.fan_out("acme", activity, recipients)
        >>> result.created, [f.recipient for f in result.failed]
    """

    def __init__(
        self,
        inbox: InboxStore,
        max_concurrency: int = 16,
        max_retries: int = 3,
        retry_delay_ms: int = 50,
    ) -> None:
        self.inbox = inbox
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._locks = KeyedLocks()
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def deliver(self, tenant_id: str, draft: InboxItem) -> tuple[InboxItem, UpsertOutcome]:
        """Upsert one draft under the recipient's lock, retrying transient errors.

        Args:
            tenant_id: Tenant identifier
            draft: Inbox item to deliver

        Returns:
            Tuple of (stored item, outcome)

        Raises:
            TransientStoreError: If every attempt failed transiently
            ValidationError: If the draft is malformed
        """
        tenant = normalize_tenant_id(tenant_id)
        draft.tenant_id = tenant
        lock_key = f"{tenant}|{draft.recipient.key}"

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._locks.hold(lock_key):
                    return await self.inbox.upsert_notification(draft)
            except TransientStoreError as e:
                if attempt > self.max_retries:
                    raise
                logger.warning(
                    "Transient inbox error, retrying",
                    extra={
                        "tenant_id": tenant,
                        "recipient": draft.recipient.key,
                        "attempt": attempt,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(self.retry_delay_ms * attempt / 1000.0)

    async def fan_out(
        self,
        tenant_id: str,
        activity: Activity,
        recipients: list[EntityRef],
    ) -> FanoutResult:
        """Deliver an activity to every recipient concurrently.

        Args:
            tenant_id: Tenant identifier
            activity: Activity being delivered
            recipients: Resolved recipients

        Returns:
            FanoutResult listing each recipient's outcome or failure
        """
        tenant = normalize_tenant_id(tenant_id)
        result = FanoutResult(activity_id=activity.id)

        unique: dict[str, EntityRef] = {}
        for recipient in recipients:
            unique.setdefault(recipient.key, recipient)

        async def deliver_one(recipient: EntityRef) -> None:
            async with self._semaphore:
                draft = build_notification(tenant, activity, recipient)
                try:
                    item, outcome = await self.deliver(tenant, draft)
                except Exception as e:
                    logger.error(
                        f"Failed to deliver activity to {recipient.key}: {e}",
                        extra={
                            "tenant_id": tenant,
                            "activity_id": activity.id,
                            "recipient": recipient.key,
                        },
                        exc_info=True,
                    )
                    attempts = self.max_retries + 1 if isinstance(e, TransientStoreError) else 1
                    result.failed.append(RecipientFailure(recipient, str(e), attempts))
                    return
                result.delivered.append(RecipientDelivery(recipient, item.id, outcome))

        await asyncio.gather(*(deliver_one(r) for r in unique.values()))

        logger.info(
            "Fanned out activity",
            extra={
                "tenant_id": tenant,
                "activity_id": activity.id,
                "created": result.created,
                "merged": result.merged,
                "duplicates": result.duplicates,
                "failed": len(result.failed),
            },
        )
        return result
