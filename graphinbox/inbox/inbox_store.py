"""
Per-tenant SQLite inbox store.

Inbox items are owned by a recipient entity. Notifications are created by
fan-out and grouped into threads; requests are created by the follow
request workflow.

Invariants:
    - At most one item per (tenant, recipient, dedup key); every dedup key
      that was delivered (created or merged) is recorded in inbox_dedup
    - At most one item per (tenant, recipient, thread key)
    - A thread merge replaces the event, increments thread_count and keeps
      the status
    - Only update_status changes an item's status
    - Dedup lookup, thread lookup and the write run in one transaction

How to change safely:
    - Keep dedup and thread keys compared trimmed and lowercased
    - Never let upsert_notification touch the status column of an
      existing item
    - Cursor sort order (created_at DESC, item_id DESC) must match the
      index; changing it invalidates outstanding cursors

Table schema:
    inbox_items:
        - tenant_id TEXT, item_id TEXT (PRIMARY KEY together)
        - recipient_key TEXT, recipient_json TEXT
        - kind TEXT, status TEXT
        - event_json TEXT
        - title TEXT, body TEXT
        - targets_json TEXT, data_json TEXT
        - dedup_key TEXT, thread_key TEXT, thread_index_key TEXT
        - thread_count INTEGER
        - created_at INTEGER, updated_at INTEGER (Unix ms)
    inbox_dedup:
        - tenant_id TEXT, recipient_key TEXT, dedup_index_key TEXT
        - item_id TEXT
        - created_at INTEGER
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..entities import (
    EntityRef,
    normalize_tenant_id,
    now_ms,
    validate_entity_ref,
    validate_tenant_id,
)
from ..errors import ValidationError
from ..storage import TenantDatabase
from .cursor import decode_cursor, encode_cursor

logger = logging.getLogger(__name__)

DEFAULT_INBOX_LIMIT = 50
MAX_INBOX_LIMIT = 200


class InboxItemKind(Enum):
    NOTIFICATION = "Notification"
    REQUEST = "Request"


class InboxItemStatus(Enum):
    UNREAD = "Unread"
    READ = "Read"
    ARCHIVED = "Archived"


class UpsertOutcome(Enum):
    """What upsert_notification did with a draft."""

    CREATED = "created"
    MERGED = "merged"
    DUPLICATE = "duplicate"


@dataclass
class InboxEventRef:
    """Reference to the event that triggered an inbox item.

    Attributes:
        kind: Event kind ("activity", "follow_request", ...)
        id: Event identifier
        type_key: Activity type key, if any
        occurred_at: When the event happened (Unix ms)
    """

    kind: str
    id: str
    type_key: str | None = None
    occurred_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "type_key": self.type_key,
            "occurred_at": self.occurred_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InboxEventRef:
        return cls(
            kind=data["kind"],
            id=data["id"],
            type_key=data.get("type_key"),
            occurred_at=data.get("occurred_at"),
        )


@dataclass
class InboxItem:
    """An item in a recipient's inbox.

    Attributes:
        tenant_id: Tenant identifier
        recipient: Inbox owner
        event: Latest triggering event
        kind: Notification or Request
        status: Unread, Read or Archived
        title: Short display text
        body: Longer display text
        targets: Entities the item is about
        data: Free-form payload for clients
        dedup_key: At most one item per recipient carries a given dedup key
        thread_key: Items sharing a thread key collapse into one
        thread_count: Number of events merged into this item
        id: Item identifier (generated on create if empty)
        created_at: Creation timestamp (Unix ms)
        updated_at: Last merge or status change (Unix ms)
    """

    tenant_id: str
    recipient: EntityRef
    event: InboxEventRef
    kind: InboxItemKind = InboxItemKind.NOTIFICATION
    status: InboxItemStatus = InboxItemStatus.UNREAD
    title: str | None = None
    body: str | None = None
    targets: list[EntityRef] = field(default_factory=list)
    data: dict[str, Any] | None = None
    dedup_key: str | None = None
    thread_key: str | None = None
    thread_count: int = 1
    id: str = ""
    created_at: int = 0
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "recipient": self.recipient.to_dict(),
            "kind": self.kind.value,
            "status": self.status.value,
            "event": self.event.to_dict(),
            "title": self.title,
            "body": self.body,
            "targets": [t.to_dict() for t in self.targets],
            "data": self.data,
            "dedup_key": self.dedup_key,
            "thread_key": self.thread_key,
            "thread_count": self.thread_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class InboxQuery:
    """Inbox query parameters.

    Attributes:
        tenant_id: Tenant identifier (required)
        recipients: Inbox owners to read (empty reads every inbox of the tenant)
        status: Only items with this status
        kind: Only items of this kind
        from_ms: Only items created at or after this time
        to_ms: Only items created before this time
        limit: Page size (None uses the store default)
        cursor: Cursor returned by a previous page
    """

    tenant_id: str
    recipients: list[EntityRef] = field(default_factory=list)
    status: InboxItemStatus | None = None
    kind: InboxItemKind | None = None
    from_ms: int | None = None
    to_ms: int | None = None
    limit: int | None = None
    cursor: str | None = None


@dataclass
class InboxPage:
    items: list[InboxItem] = field(default_factory=list)
    next_cursor: str | None = None


def _index_key(key: str) -> str:
    return key.strip().lower()


class InboxStore(TenantDatabase):
    """Per-tenant SQLite inbox with dedup and thread indexes.

    Example:
        >>> store = InboxStore("/var/lib/graphinbox")
        >>> item, outcome = await store.upsert_notification(draft)
        >>> page = await store.query(InboxQuery(tenant_id="acme", recipients=[me]))
    """

    DB_PREFIX = "inbox"
    SCHEMA = """
        CREATE TABLE IF NOT EXISTS inbox_items (
            tenant_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            recipient_key TEXT NOT NULL,
            recipient_json TEXT NOT NULL,
            kind TEXT NOT NULL,
            status TEXT NOT NULL,
            event_json TEXT NOT NULL,
            title TEXT,
            body TEXT,
            targets_json TEXT NOT NULL DEFAULT '[]',
            data_json TEXT,
            dedup_key TEXT,
            thread_key TEXT,
            thread_index_key TEXT,
            thread_count INTEGER NOT NULL DEFAULT 1,
            created_at INTEGER NOT NULL,
            updated_at INTEGER,
            PRIMARY KEY (tenant_id, item_id)
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_inbox_thread
            ON inbox_items(tenant_id, recipient_key, thread_index_key)
            WHERE thread_index_key IS NOT NULL;

        CREATE INDEX IF NOT EXISTS idx_inbox_recipient_created
            ON inbox_items(tenant_id, recipient_key, created_at DESC, item_id DESC);

        CREATE TABLE IF NOT EXISTS inbox_dedup (
            tenant_id TEXT NOT NULL,
            recipient_key TEXT NOT NULL,
            dedup_index_key TEXT NOT NULL,
            item_id TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            PRIMARY KEY (tenant_id, recipient_key, dedup_index_key)
        );
    """

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        default_limit: int = DEFAULT_INBOX_LIMIT,
        max_limit: int = MAX_INBOX_LIMIT,
    ) -> None:
        super().__init__(data_dir, wal_mode, busy_timeout_ms, cache_size_pages)
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def get(self, tenant_id: str, item_id: str) -> InboxItem | None:
        """Get an inbox item by id.

        Returns:
            InboxItem or None if not found
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not item_id or not item_id.strip():
            return None

        with self._get_connection(tenant) as conn:
            return self._fetch_item(conn, tenant, item_id.strip())

    async def find_by_dedup_key(
        self, tenant_id: str, recipient: EntityRef, dedup_key: str
    ) -> InboxItem | None:
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not dedup_key or not dedup_key.strip():
            return None

        with self._get_connection(tenant) as conn:
            return self._find_by_dedup(conn, tenant, recipient.key, _index_key(dedup_key))

    async def find_by_thread_key(
        self, tenant_id: str, recipient: EntityRef, thread_key: str
    ) -> InboxItem | None:
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not thread_key or not thread_key.strip():
            return None

        with self._get_connection(tenant) as conn:
            return self._find_by_thread(conn, tenant, recipient.key, _index_key(thread_key))

    async def upsert_notification(self, draft: InboxItem) -> tuple[InboxItem, UpsertOutcome]:
        """Deliver a draft item, honoring dedup and thread keys.

        In one immediate transaction:
        1. If the recipient already received the dedup key, return the
           existing item unchanged.
        2. Else if the recipient has an item with the thread key, merge the
           draft's event into it (status is kept).
        3. Else insert the draft as a new item.

        Args:
            draft: Item to deliver; id, created_at and status of a new item
                are filled in when missing

        Returns:
            Tuple of (stored item, outcome)
        """
        draft = self._normalize_draft(draft)
        errors = self._validate_draft(draft)
        if errors:
            raise ValidationError.from_errors(errors)

        tenant = draft.tenant_id
        recipient_key = draft.recipient.key
        dedup_index_key = _index_key(draft.dedup_key) if draft.dedup_key else None
        thread_index_key = _index_key(draft.thread_key) if draft.thread_key else None

        with self._get_connection(tenant) as conn:
            with self._transaction(conn):
                if dedup_index_key:
                    existing = self._find_by_dedup(conn, tenant, recipient_key, dedup_index_key)
                    if existing is not None:
                        return existing, UpsertOutcome.DUPLICATE

                if thread_index_key:
                    thread = self._find_by_thread(conn, tenant, recipient_key, thread_index_key)
                    if thread is not None:
                        merged = self._merge_into_thread(conn, thread, draft)
                        self._record_dedup(conn, merged, recipient_key, dedup_index_key)
                        logger.debug(
                            "Merged inbox item into thread",
                            extra={
                                "tenant_id": tenant,
                                "item_id": merged.id,
                                "recipient": recipient_key,
                                "thread_count": merged.thread_count,
                            },
                        )
                        return merged, UpsertOutcome.MERGED

                self._insert_item(conn, draft, recipient_key, thread_index_key)
                self._record_dedup(conn, draft, recipient_key, dedup_index_key)

        logger.debug(
            "Created inbox item",
            extra={
                "tenant_id": tenant,
                "item_id": draft.id,
                "recipient": recipient_key,
                "kind": draft.kind.value,
            },
        )
        return draft, UpsertOutcome.CREATED

    async def update_status(
        self,
        tenant_id: str,
        item_id: str,
        status: InboxItemStatus,
    ) -> InboxItem | None:
        """Set an item's status.

        Returns:
            Updated item, or None if the item does not exist
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not item_id or not item_id.strip():
            return None

        with self._get_connection(tenant) as conn:
            with self._transaction(conn):
                cursor = conn.execute(
                    """
                    UPDATE inbox_items SET status = ?, updated_at = ?
                    WHERE tenant_id = ? AND item_id = ?
                    """,
                    (status.value, now_ms(), tenant, item_id.strip()),
                )
                if cursor.rowcount == 0:
                    return None
                item = self._fetch_item(conn, tenant, item_id.strip())

        logger.debug(
            "Updated inbox item status",
            extra={"tenant_id": tenant, "item_id": item_id, "status": status.value},
        )
        return item

    async def query(self, query: InboxQuery) -> InboxPage:
        """Query inbox items, newest first.

        Args:
            query: Query parameters

        Returns:
            InboxPage with up to `limit` items and a cursor if more remain

        Raises:
            ValidationError: If the query or its cursor is malformed
        """
        limit = self.default_limit if query.limit is None else query.limit
        errors: list[str] = []
        validate_tenant_id(query.tenant_id, errors)
        if limit < 1 or limit > self.max_limit:
            errors.append(f"limit must be between 1 and {self.max_limit}")
        for i, recipient in enumerate(query.recipients):
            validate_entity_ref(recipient, f"recipients[{i}]", errors)
        if errors:
            raise ValidationError.from_errors(errors)

        tenant = normalize_tenant_id(query.tenant_id)
        sql = "SELECT * FROM inbox_items WHERE tenant_id = ?"
        params: list[Any] = [tenant]

        if query.recipients:
            keys = list(dict.fromkeys(r.key for r in query.recipients))
            placeholders = ",".join("?" * len(keys))
            sql += f" AND recipient_key IN ({placeholders})"
            params.extend(keys)

        if query.status is not None:
            sql += " AND status = ?"
            params.append(query.status.value)

        if query.kind is not None:
            sql += " AND kind = ?"
            params.append(query.kind.value)

        if query.from_ms is not None:
            sql += " AND created_at >= ?"
            params.append(query.from_ms)

        if query.to_ms is not None:
            sql += " AND created_at < ?"
            params.append(query.to_ms)

        if query.cursor:
            cursor_time, cursor_id = decode_cursor(query.cursor)
            sql += " AND (created_at < ? OR (created_at = ? AND item_id < ?))"
            params.extend([cursor_time, cursor_time, cursor_id])

        # Fetch one extra row to know whether another page exists
        sql += " ORDER BY created_at DESC, item_id DESC LIMIT ?"
        params.append(limit + 1)

        with self._get_connection(tenant) as conn:
            rows = conn.execute(sql, params).fetchall()

        items = [self._row_to_item(row) for row in rows[:limit]]
        next_cursor = None
        if len(rows) > limit:
            last = items[-1]
            next_cursor = encode_cursor(last.created_at, last.id)

        return InboxPage(items=items, next_cursor=next_cursor)

    def _normalize_draft(self, draft: InboxItem) -> InboxItem:
        return replace(
            draft,
            tenant_id=normalize_tenant_id(draft.tenant_id),
            recipient=draft.recipient.normalized() if draft.recipient is not None else None,
            dedup_key=(draft.dedup_key or "").strip() or None,
            thread_key=(draft.thread_key or "").strip() or None,
            id=(draft.id or "").strip() or str(uuid.uuid4()),
            created_at=draft.created_at or now_ms(),
            thread_count=max(draft.thread_count, 1),
        )

    def _validate_draft(self, draft: InboxItem) -> list[str]:
        errors: list[str] = []
        validate_tenant_id(draft.tenant_id, errors)
        validate_entity_ref(draft.recipient, "recipient", errors)
        if draft.event is None or not draft.event.id:
            errors.append("event.id is required")
        return errors

    def _find_by_dedup(
        self, conn: sqlite3.Connection, tenant: str, recipient_key: str, dedup_index_key: str
    ) -> InboxItem | None:
        row = conn.execute(
            """
            SELECT i.* FROM inbox_dedup d
            JOIN inbox_items i ON i.tenant_id = d.tenant_id AND i.item_id = d.item_id
            WHERE d.tenant_id = ? AND d.recipient_key = ? AND d.dedup_index_key = ?
            """,
            (tenant, recipient_key, dedup_index_key),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def _find_by_thread(
        self, conn: sqlite3.Connection, tenant: str, recipient_key: str, thread_index_key: str
    ) -> InboxItem | None:
        row = conn.execute(
            """
            SELECT * FROM inbox_items
            WHERE tenant_id = ? AND recipient_key = ? AND thread_index_key = ?
            """,
            (tenant, recipient_key, thread_index_key),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def _fetch_item(self, conn: sqlite3.Connection, tenant: str, item_id: str) -> InboxItem | None:
        row = conn.execute(
            "SELECT * FROM inbox_items WHERE tenant_id = ? AND item_id = ?",
            (tenant, item_id),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def _merge_into_thread(
        self, conn: sqlite3.Connection, thread: InboxItem, draft: InboxItem
    ) -> InboxItem:
        updated_at = now_ms()
        conn.execute(
            """
            UPDATE inbox_items
            SET event_json = ?, thread_count = thread_count + 1, updated_at = ?
            WHERE tenant_id = ? AND item_id = ?
            """,
            (json.dumps(draft.event.to_dict()), updated_at, thread.tenant_id, thread.id),
        )
        return replace(
            thread,
            event=draft.event,
            thread_count=thread.thread_count + 1,
            updated_at=updated_at,
        )

    def _insert_item(
        self,
        conn: sqlite3.Connection,
        item: InboxItem,
        recipient_key: str,
        thread_index_key: str | None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO inbox_items
            (tenant_id, item_id, recipient_key, recipient_json, kind, status,
             event_json, title, body, targets_json, data_json,
             dedup_key, thread_key, thread_index_key, thread_count,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.tenant_id,
                item.id,
                recipient_key,
                json.dumps(item.recipient.to_dict()),
                item.kind.value,
                item.status.value,
                json.dumps(item.event.to_dict()),
                item.title,
                item.body,
                json.dumps([t.to_dict() for t in item.targets]),
                json.dumps(item.data) if item.data is not None else None,
                item.dedup_key,
                item.thread_key,
                thread_index_key,
                item.thread_count,
                item.created_at,
                item.updated_at,
            ),
        )

    def _record_dedup(
        self,
        conn: sqlite3.Connection,
        item: InboxItem,
        recipient_key: str,
        dedup_index_key: str | None,
    ) -> None:
        if not dedup_index_key:
            return
        conn.execute(
            """
            INSERT OR IGNORE INTO inbox_dedup
            (tenant_id, recipient_key, dedup_index_key, item_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (item.tenant_id, recipient_key, dedup_index_key, item.id, now_ms()),
        )

    def _row_to_item(self, row: sqlite3.Row) -> InboxItem:
        """Convert database row to InboxItem."""
        return InboxItem(
            tenant_id=row["tenant_id"],
            recipient=EntityRef.from_dict(json.loads(row["recipient_json"])),
            event=InboxEventRef.from_dict(json.loads(row["event_json"])),
            kind=InboxItemKind(row["kind"]),
            status=InboxItemStatus(row["status"]),
            title=row["title"],
            body=row["body"],
            targets=[EntityRef.from_dict(t) for t in json.loads(row["targets_json"])],
            data=json.loads(row["data_json"]) if row["data_json"] else None,
            dedup_key=row["dedup_key"],
            thread_key=row["thread_key"],
            thread_count=row["thread_count"],
            id=row["item_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
