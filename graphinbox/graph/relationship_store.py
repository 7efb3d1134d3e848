"""
Per-tenant SQLite store for relationship edges.

This module persists directed, scoped relationship edges (follow, subscribe,
mute, block) between entities of one tenant and answers the point and range
lookups the visibility engine and recipient resolver need.

Invariants:
    - One SQLite file per tenant
    - At most one edge per (tenant_id, from_key, to_key, kind, scope)
    - The uniqueness constraint lives on the edge row itself, so the
      composite index and the primary record are written in one statement
    - Entity comparisons use the canonical entity key

How to change safely:
    - Never relax the UNIQUE constraint; upsert semantics depend on it
    - Add columns with defaults for backward compatibility
    - Keep from_key/to_key in sync with entities.entity_key

Table schema:
    relationship_edges:
        - tenant_id TEXT
        - edge_id TEXT
        - from_key TEXT, to_key TEXT (canonical entity keys)
        - from_json TEXT, to_json TEXT (entity refs as given)
        - kind TEXT, scope TEXT
        - filter_json TEXT (nullable)
        - is_active INTEGER
        - created_at INTEGER (Unix ms)
        - PRIMARY KEY (tenant_id, edge_id)
        - UNIQUE (tenant_id, from_key, to_key, kind, scope)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
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
from ..errors import ValidationError
from ..storage import TenantDatabase
from .filters import RelationshipFilter

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 200


@dataclass
class RelationshipEdge:
    """A directed, scoped relationship between two entities.

    Attributes:
        tenant_id: Tenant identifier
        from_: Entity that owns the relationship (follower, muter, ...)
        to: Subject of the relationship
        kind: Relationship kind
        scope: Which part of an activity `to` is matched against
        filter: Optional activity filter
        is_active: Inactive edges are kept but ignored by lookups
        id: Edge identifier (generated on upsert if empty)
        created_at: Creation timestamp (Unix ms)
    """

    tenant_id: str
    from_: EntityRef
    to: EntityRef
    kind: RelationshipKind
    scope: RelationshipScope = RelationshipScope.ANY
    filter: RelationshipFilter | None = None
    is_active: bool = True
    id: str = ""
    created_at: int = 0


def normalize_edge(edge: RelationshipEdge) -> RelationshipEdge:
    """Trim entities, normalize tenant and filter, fill id and created_at."""
    return replace(
        edge,
        tenant_id=normalize_tenant_id(edge.tenant_id),
        from_=edge.from_.normalized() if edge.from_ is not None else None,
        to=edge.to.normalized() if edge.to is not None else None,
        filter=edge.filter.normalized() if edge.filter is not None else None,
        id=(edge.id or "").strip() or str(uuid.uuid4()),
        created_at=edge.created_at or now_ms(),
    )


def validate_edge(edge: RelationshipEdge) -> list[str]:
    """Validate a normalized edge.

    Returns:
        List of validation errors (empty if valid)
    """
    errors: list[str] = []
    validate_tenant_id(edge.tenant_id, errors)
    validate_entity_ref(edge.from_, "from", errors)
    validate_entity_ref(edge.to, "to", errors)

    if not isinstance(edge.kind, RelationshipKind):
        errors.append(f"kind '{edge.kind}' is not a valid RelationshipKind")
    if not isinstance(edge.scope, RelationshipScope):
        errors.append(f"scope '{edge.scope}' is not a valid RelationshipScope")
    if edge.filter is not None:
        errors.extend(edge.filter.validate())

    return errors


class RelationshipGraphStore(TenantDatabase):
    """Per-tenant SQLite store for relationship edges.

    This class provides:
    - Edge upsert with composite-key replacement
    - Point lookups by id and by composite key
    - Range queries by from/to/kind/scope/is_active
    - Related-entity lookups in both directions

    Example:
        >>> store = RelationshipGraphStore("/var/lib/graphinbox")
        >>> edge = await store.upsert(RelationshipEdge(
        ...     tenant_id="acme",
        ...     from_=EntityRef("identity", "Profile", "u2"),
        ...     to=EntityRef("identity", "Profile", "u1"),
        ...     kind=RelationshipKind.FOLLOW,
        ... ))
        >>> followers = await store.get_inbound_entities(
        ...     "acme", EntityRef("identity", "Profile", "u1"), RelationshipKind.FOLLOW
        ... )
    """

    DB_PREFIX = "graph"
    SCHEMA = """
        CREATE TABLE IF NOT EXISTS relationship_edges (
            tenant_id TEXT NOT NULL,
            edge_id TEXT NOT NULL,
            from_key TEXT NOT NULL,
            to_key TEXT NOT NULL,
            from_json TEXT NOT NULL,
            to_json TEXT NOT NULL,
            kind TEXT NOT NULL,
            scope TEXT NOT NULL,
            filter_json TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at INTEGER NOT NULL,
            PRIMARY KEY (tenant_id, edge_id),
            UNIQUE (tenant_id, from_key, to_key, kind, scope)
        );

        CREATE INDEX IF NOT EXISTS idx_edges_from
            ON relationship_edges(tenant_id, from_key, kind);
        CREATE INDEX IF NOT EXISTS idx_edges_to
            ON relationship_edges(tenant_id, to_key, kind);
    """

    async def get(self, tenant_id: str, edge_id: str) -> RelationshipEdge | None:
        """Get an edge by id.

        Args:
            tenant_id: Tenant identifier
            edge_id: Edge identifier

        Returns:
            RelationshipEdge or None if not found
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not edge_id or not edge_id.strip():
            return None

        with self._get_connection(tenant) as conn:
            row = conn.execute(
                "SELECT * FROM relationship_edges WHERE tenant_id = ? AND edge_id = ?",
                (tenant, edge_id.strip()),
            ).fetchone()
            return self._row_to_edge(row) if row else None

    async def find(
        self,
        tenant_id: str,
        from_: EntityRef,
        to: EntityRef,
        kind: RelationshipKind,
        scope: RelationshipScope,
    ) -> RelationshipEdge | None:
        """Exact lookup by composite key.

        Returns:
            RelationshipEdge or None if not found
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant:
            return None

        with self._get_connection(tenant) as conn:
            row = conn.execute(
                """
                SELECT * FROM relationship_edges
                WHERE tenant_id = ? AND from_key = ? AND to_key = ? AND kind = ? AND scope = ?
                """,
                (tenant, from_.key, to.key, kind.value, scope.value),
            ).fetchone()
            return self._row_to_edge(row) if row else None

    async def upsert(self, edge: RelationshipEdge) -> RelationshipEdge:
        """Insert an edge, replacing any edge with the same composite key.

        The stored edge carries the id of the latest upsert. An edge that
        reuses an existing id under a different composite key moves that id.

        Args:
            edge: Edge to store

        Returns:
            The normalized, stored edge

        Raises:
            ValidationError: If the edge is malformed (no store access happens)
        """
        edge = normalize_edge(edge)
        errors = validate_edge(edge)
        if errors:
            raise ValidationError.from_errors(errors)

        with self._get_connection(edge.tenant_id) as conn:
            with self._transaction(conn):
                previous = conn.execute(
                    """
                    SELECT edge_id FROM relationship_edges
                    WHERE tenant_id = ? AND from_key = ? AND to_key = ? AND kind = ? AND scope = ?
                    """,
                    (edge.tenant_id, edge.from_.key, edge.to.key, edge.kind.value, edge.scope.value),
                ).fetchone()

                # REPLACE removes rows conflicting on the primary key or the
                # composite UNIQUE constraint before inserting.
                conn.execute(
                    """
                    INSERT OR REPLACE INTO relationship_edges
                    (tenant_id, edge_id, from_key, to_key, from_json, to_json,
                     kind, scope, filter_json, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        edge.tenant_id,
                        edge.id,
                        edge.from_.key,
                        edge.to.key,
                        json.dumps(edge.from_.to_dict()),
                        json.dumps(edge.to.to_dict()),
                        edge.kind.value,
                        edge.scope.value,
                        json.dumps(edge.filter.to_dict()) if edge.filter is not None else None,
                        1 if edge.is_active else 0,
                        edge.created_at,
                    ),
                )

        logger.debug(
            "Upserted edge",
            extra={
                "tenant_id": edge.tenant_id,
                "edge_id": edge.id,
                "replaced_edge_id": previous["edge_id"] if previous else None,
                "kind": edge.kind.value,
                "scope": edge.scope.value,
            },
        )
        return edge

    async def remove(self, tenant_id: str, edge_id: str) -> bool:
        """Hard-delete an edge.

        Returns:
            True if deleted, False if not found
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant or not edge_id or not edge_id.strip():
            return False

        with self._get_connection(tenant) as conn:
            cursor = conn.execute(
                "DELETE FROM relationship_edges WHERE tenant_id = ? AND edge_id = ?",
                (tenant, edge_id.strip()),
            )
            removed = cursor.rowcount > 0

        if removed:
            logger.debug("Removed edge", extra={"tenant_id": tenant, "edge_id": edge_id})
        return removed

    async def query(
        self,
        tenant_id: str,
        from_: EntityRef | None = None,
        to: EntityRef | None = None,
        kind: RelationshipKind | None = None,
        scope: RelationshipScope | None = None,
        is_active: bool | None = True,
        limit: int = DEFAULT_QUERY_LIMIT,
        kinds: list[RelationshipKind] | None = None,
    ) -> list[RelationshipEdge]:
        """Query edges of one tenant.

        Args:
            tenant_id: Tenant identifier
            from_: Filter by source entity
            to: Filter by target entity
            kind: Filter by a single kind
            scope: Filter by scope
            is_active: Filter by active flag (None returns both)
            limit: Maximum edges to return
            kinds: Filter by any of several kinds

        Returns:
            Edges ordered by creation time
        """
        tenant = normalize_tenant_id(tenant_id)
        if not tenant:
            raise ValidationError.from_errors(["tenant_id is required"])

        sql = "SELECT * FROM relationship_edges WHERE tenant_id = ?"
        params: list[Any] = [tenant]

        if from_ is not None:
            sql += " AND from_key = ?"
            params.append(from_.key)

        if to is not None:
            sql += " AND to_key = ?"
            params.append(to.key)

        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)

        if kinds:
            placeholders = ",".join("?" * len(kinds))
            sql += f" AND kind IN ({placeholders})"
            params.extend(k.value for k in kinds)

        if scope is not None:
            sql += " AND scope = ?"
            params.append(scope.value)

        if is_active is not None:
            sql += " AND is_active = ?"
            params.append(1 if is_active else 0)

        sql += " ORDER BY created_at ASC, edge_id ASC LIMIT ?"
        params.append(limit)

        with self._get_connection(tenant) as conn:
            return [self._row_to_edge(row) for row in conn.execute(sql, params).fetchall()]

    async def get_related_entities(
        self,
        tenant_id: str,
        from_: EntityRef,
        kind: RelationshipKind,
    ) -> list[EntityRef]:
        """All `to` entities of active edges of `kind` leaving `from_`."""
        return await self._related(tenant_id, "from_key", "to_json", from_, kind)

    async def get_inbound_entities(
        self,
        tenant_id: str,
        to: EntityRef,
        kind: RelationshipKind,
    ) -> list[EntityRef]:
        """All `from` entities of active edges of `kind` pointing at `to`.

        This is the "who follows X" lookup.
        """
        return await self._related(tenant_id, "to_key", "from_json", to, kind)

    async def _related(
        self,
        tenant_id: str,
        match_column: str,
        value_column: str,
        entity: EntityRef,
        kind: RelationshipKind,
    ) -> list[EntityRef]:
        tenant = normalize_tenant_id(tenant_id)
        if not tenant:
            return []

        with self._get_connection(tenant) as conn:
            cursor = conn.execute(
                f"""
                SELECT {value_column} FROM relationship_edges
                WHERE tenant_id = ? AND {match_column} = ? AND kind = ? AND is_active = 1
                ORDER BY created_at ASC, edge_id ASC
                """,
                (tenant, entity.key, kind.value),
            )
            return [EntityRef.from_dict(json.loads(row[0])) for row in cursor.fetchall()]

    async def are_mutual(
        self,
        tenant_id: str,
        entity1: EntityRef,
        entity2: EntityRef,
        kind: RelationshipKind,
    ) -> bool:
        """Check for active Any-scope edges of `kind` in both directions."""
        forward = await self.find(tenant_id, entity1, entity2, kind, RelationshipScope.ANY)
        if forward is None or not forward.is_active:
            return False

        backward = await self.find(tenant_id, entity2, entity1, kind, RelationshipScope.ANY)
        return backward is not None and backward.is_active

    async def get_mutual_entities(
        self,
        tenant_id: str,
        entity1: EntityRef,
        entity2: EntityRef,
        kind: RelationshipKind,
        limit: int = 50,
    ) -> list[EntityRef]:
        """Entities both `entity1` and `entity2` have an active `kind` edge to."""
        first = await self.get_related_entities(tenant_id, entity1, kind)
        second = {e.key for e in await self.get_related_entities(tenant_id, entity2, kind)}

        mutual: list[EntityRef] = []
        seen: set[str] = set()
        for entity in first:
            if entity.key in second and entity.key not in seen:
                seen.add(entity.key)
                mutual.append(entity)
                if len(mutual) >= limit:
                    break
        return mutual

    async def count_mutual_entities(
        self,
        tenant_id: str,
        entity1: EntityRef,
        entity2: EntityRef,
        kind: RelationshipKind,
    ) -> int:
        first = {e.key for e in await self.get_related_entities(tenant_id, entity1, kind)}
        second = {e.key for e in await self.get_related_entities(tenant_id, entity2, kind)}
        return len(first & second)

    async def get_stats(self, tenant_id: str) -> dict[str, int]:
        """Get edge counts per kind for a tenant."""
        tenant = normalize_tenant_id(tenant_id)
        with self._get_connection(tenant) as conn:
            cursor = conn.execute(
                """
                SELECT kind, COUNT(*) FROM relationship_edges
                WHERE tenant_id = ? GROUP BY kind
                """,
                (tenant,),
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def _row_to_edge(self, row: sqlite3.Row) -> RelationshipEdge:
        """Convert database row to RelationshipEdge."""
        filter_json = row["filter_json"]
        return RelationshipEdge(
            tenant_id=row["tenant_id"],
            from_=EntityRef.from_dict(json.loads(row["from_json"])),
            to=EntityRef.from_dict(json.loads(row["to_json"])),
            kind=RelationshipKind(row["kind"]),
            scope=RelationshipScope(row["scope"]),
            filter=RelationshipFilter.from_dict(json.loads(filter_json)) if filter_json else None,
            is_active=bool(row["is_active"]),
            id=row["edge_id"],
            created_at=row["created_at"],
        )
