"""
Unit tests for the relationship graph SQLite store.

Tests cover:
- Upsert, get, find and remove
- Composite-key uniqueness (latest id wins)
- Range queries and related-entity lookups
- Mutual relationships
- Tenant isolation
"""

import tempfile

import pytest

from graphinbox.entities import EntityRef, RelationshipKind, RelationshipScope, Visibility
from graphinbox.errors import ValidationError
from graphinbox.graph import RelationshipEdge, RelationshipFilter, RelationshipGraphStore


def profile(user_id: str) -> EntityRef:
    return EntityRef("identity", "Profile", user_id)


def follow(from_id: str, to_id: str, **kwargs) -> RelationshipEdge:
    return RelationshipEdge(
        tenant_id=kwargs.pop("tenant_id", "acme"),
        from_=profile(from_id),
        to=profile(to_id),
        kind=kwargs.pop("kind", RelationshipKind.FOLLOW),
        **kwargs,
    )


class TestRelationshipGraphStore:
    """Tests for RelationshipGraphStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create graph store."""
        return RelationshipGraphStore(data_dir)

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store):
        """Upserted edge can be read back by id."""
        edge = await store.upsert(follow("u2", "u1"))

        assert edge.id
        assert edge.created_at > 0

        fetched = await store.get("acme", edge.id)
        assert fetched is not None
        assert fetched.from_ == profile("u2")
        assert fetched.to == profile("u1")
        assert fetched.kind == RelationshipKind.FOLLOW
        assert fetched.scope == RelationshipScope.ANY
        assert fetched.is_active is True

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        """Read paths return None for unknown ids."""
        assert await store.get("acme", "nope") is None

    @pytest.mark.asyncio
    async def test_upsert_same_composite_key_keeps_one_edge(self, store):
        """Two upserts with different ids leave one edge carrying the latest id."""
        await store.upsert(follow("u2", "u1", id="edge-1"))
        await store.upsert(follow("u2", "u1", id="edge-2"))

        edges = await store.query("acme", from_=profile("u2"))
        assert [e.id for e in edges] == ["edge-2"]
        assert await store.get("acme", "edge-1") is None

    @pytest.mark.asyncio
    async def test_uniqueness_ignores_case_and_whitespace(self, store):
        """Case variants of the same entities collide on the composite key."""
        await store.upsert(follow("u2", "u1", id="edge-1"))
        await store.upsert(
            RelationshipEdge(
                tenant_id=" ACME ",
                from_=EntityRef("IDENTITY", "profile", " U2"),
                to=EntityRef("Identity", "PROFILE", "u1 "),
                kind=RelationshipKind.FOLLOW,
                id="edge-2",
            )
        )

        edges = await store.query("acme", to=profile("U1"))
        assert len(edges) == 1
        assert edges[0].id == "edge-2"

    @pytest.mark.asyncio
    async def test_different_scope_is_a_different_edge(self, store):
        """Scope is part of the composite key."""
        await store.upsert(follow("u2", "u1", kind=RelationshipKind.MUTE, scope=RelationshipScope.ANY))
        await store.upsert(
            follow("u2", "u1", kind=RelationshipKind.MUTE, scope=RelationshipScope.ACTOR_ONLY)
        )

        edges = await store.query("acme", from_=profile("u2"), kind=RelationshipKind.MUTE)
        assert {e.scope for e in edges} == {RelationshipScope.ANY, RelationshipScope.ACTOR_ONLY}

    @pytest.mark.asyncio
    async def test_find_by_composite_key(self, store):
        edge = await store.upsert(follow("u2", "u1"))

        found = await store.find(
            "acme", profile("U2"), profile("U1"), RelationshipKind.FOLLOW, RelationshipScope.ANY
        )
        assert found is not None
        assert found.id == edge.id

        assert (
            await store.find(
                "acme", profile("u1"), profile("u2"), RelationshipKind.FOLLOW, RelationshipScope.ANY
            )
            is None
        )

    @pytest.mark.asyncio
    async def test_upsert_validates_before_writing(self, store, data_dir):
        """Malformed edges raise ValidationError and create no database."""
        with pytest.raises(ValidationError) as exc_info:
            await store.upsert(
                RelationshipEdge(
                    tenant_id="acme",
                    from_=EntityRef("identity", "", "u2"),
                    to=profile("u1"),
                    kind=RelationshipKind.FOLLOW,
                    filter=RelationshipFilter(required_tags_any=["t" * 101]),
                )
            )

        assert "from.type is required" in exc_info.value.errors
        assert "filter.required_tags_any[0] exceeds maximum length of 100" in exc_info.value.errors
        assert not await store.tenant_exists("acme")

    @pytest.mark.asyncio
    async def test_filter_visibility_names(self, store):
        """Visibility names are stored as enum values; unknown names are rejected."""
        edge = await store.upsert(
            follow("u2", "u1", filter=RelationshipFilter(allowed_visibilities=["Public"]))
        )

        fetched = await store.get("acme", edge.id)
        assert fetched.filter.allowed_visibilities == [Visibility.PUBLIC]

        with pytest.raises(ValidationError) as exc_info:
            await store.upsert(
                follow("u3", "u1", filter=RelationshipFilter(allowed_visibilities=["Everyone"]))
            )
        assert exc_info.value.errors == [
            "filter.allowed_visibilities[0] 'Everyone' is not a valid Visibility"
        ]

    @pytest.mark.asyncio
    async def test_upsert_requires_tenant(self, store):
        with pytest.raises(ValidationError):
            await store.upsert(follow("u2", "u1", tenant_id=" "))

    @pytest.mark.asyncio
    async def test_filter_is_normalized_and_stored(self, store):
        edge = await store.upsert(
            follow("u2", "u1", filter=RelationshipFilter(type_keys=[" a.b ", "A.B", ""]))
        )

        fetched = await store.get("acme", edge.id)
        assert fetched.filter is not None
        assert fetched.filter.type_keys == ["a.b"]

    @pytest.mark.asyncio
    async def test_remove(self, store):
        edge = await store.upsert(follow("u2", "u1"))

        assert await store.remove("acme", edge.id) is True
        assert await store.get("acme", edge.id) is None
        assert await store.remove("acme", edge.id) is False

    @pytest.mark.asyncio
    async def test_query_active_flag(self, store):
        """Inactive edges are hidden by default and returned with is_active=None."""
        await store.upsert(follow("u2", "u1"))
        await store.upsert(follow("u3", "u1", is_active=False))

        active = await store.query("acme", to=profile("u1"))
        everything = await store.query("acme", to=profile("u1"), is_active=None)
        inactive = await store.query("acme", to=profile("u1"), is_active=False)

        assert [e.from_.id for e in active] == ["u2"]
        assert {e.from_.id for e in everything} == {"u2", "u3"}
        assert [e.from_.id for e in inactive] == ["u3"]

    @pytest.mark.asyncio
    async def test_query_limit(self, store):
        for i in range(5):
            await store.upsert(follow(f"f{i}", "u1"))

        assert len(await store.query("acme", to=profile("u1"), limit=3)) == 3

    @pytest.mark.asyncio
    async def test_related_and_inbound_entities(self, store):
        """Related walks outgoing edges; inbound walks incoming edges."""
        await store.upsert(follow("u2", "u1"))
        await store.upsert(follow("u3", "u1"))
        await store.upsert(follow("u2", "u4"))
        await store.upsert(follow("u5", "u1", is_active=False))
        await store.upsert(follow("u6", "u1", kind=RelationshipKind.MUTE))

        followers = await store.get_inbound_entities("acme", profile("u1"), RelationshipKind.FOLLOW)
        following = await store.get_related_entities("acme", profile("u2"), RelationshipKind.FOLLOW)

        assert {e.id for e in followers} == {"u2", "u3"}
        assert {e.id for e in following} == {"u1", "u4"}

    @pytest.mark.asyncio
    async def test_are_mutual(self, store):
        await store.upsert(follow("u1", "u2"))
        assert not await store.are_mutual("acme", profile("u1"), profile("u2"), RelationshipKind.FOLLOW)

        await store.upsert(follow("u2", "u1"))
        assert await store.are_mutual("acme", profile("u1"), profile("u2"), RelationshipKind.FOLLOW)

    @pytest.mark.asyncio
    async def test_mutual_entities(self, store):
        """Mutual entities are those both sides relate to."""
        for target in ("c1", "c2", "c3"):
            await store.upsert(follow("a", target))
        for target in ("c2", "c3", "c4"):
            await store.upsert(follow("b", target))

        mutual = await store.get_mutual_entities(
            "acme", profile("a"), profile("b"), RelationshipKind.FOLLOW
        )
        count = await store.count_mutual_entities(
            "acme", profile("a"), profile("b"), RelationshipKind.FOLLOW
        )

        assert {e.id for e in mutual} == {"c2", "c3"}
        assert count == 2

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, store):
        """Edges of one tenant are invisible to another."""
        edge = await store.upsert(follow("u2", "u1", tenant_id="acme"))

        assert await store.get("globex", edge.id) is None
        assert await store.get_inbound_entities("globex", profile("u1"), RelationshipKind.FOLLOW) == []

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.upsert(follow("u2", "u1"))
        await store.upsert(follow("u3", "u1", kind=RelationshipKind.BLOCK))

        assert await store.get_stats("acme") == {"Follow": 1, "Block": 1}
