"""
Unit tests for the mute/block visibility engine.

Tests cover:
- Scope matching for ActorOnly, TargetOnly, OwnerOnly and Any
- Block-before-mute ordering
- Inactive edges and edge filters
"""

import tempfile

import pytest

from graphinbox.entities import Activity, EntityRef, RelationshipKind, RelationshipScope
from graphinbox.graph import (
    RelationshipEdge,
    RelationshipFilter,
    RelationshipGraphStore,
    VisibilityDecisionEngine,
)

VIEWER = EntityRef("identity", "Profile", "viewer")
ACTOR = EntityRef("identity", "Profile", "actor")
TARGET = EntityRef("content", "Post", "target")
OWNER = EntityRef("identity", "Profile", "owner")

SUBJECTS = {"actor": ACTOR, "target": TARGET, "owner": OWNER}

EXPECTED_MATCHES = {
    RelationshipScope.ACTOR_ONLY: {"actor"},
    RelationshipScope.TARGET_ONLY: {"target"},
    RelationshipScope.OWNER_ONLY: {"owner"},
    RelationshipScope.ANY: {"actor", "target", "owner"},
}


def make_activity(**overrides) -> Activity:
    values = dict(
        id="a1",
        tenant_id="acme",
        type_key="comment.created",
        actor=ACTOR,
        targets=[TARGET],
        owner=OWNER,
        tags=[],
    )
    values.update(overrides)
    return Activity(**values)


def edge_to(to: EntityRef, kind=RelationshipKind.MUTE, scope=RelationshipScope.ANY, **kwargs):
    return RelationshipEdge(
        tenant_id="acme",
        from_=VIEWER,
        to=to,
        kind=kind,
        scope=scope,
        **kwargs,
    )


class TestVisibilityDecisionEngine:
    """Tests for VisibilityDecisionEngine.can_see."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def graph(self, data_dir):
        return RelationshipGraphStore(data_dir)

    @pytest.fixture
    def engine(self, graph):
        return VisibilityDecisionEngine(graph)

    @pytest.mark.asyncio
    async def test_no_edges_allows(self, engine):
        decision = await engine.can_see("acme", VIEWER, make_activity())

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.matched_edge_id is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("scope", list(EXPECTED_MATCHES))
    @pytest.mark.parametrize("subject", list(SUBJECTS))
    async def test_scope_matching(self, graph, engine, scope, subject):
        """An edge to each subject matches exactly per its scope."""
        edge = await graph.upsert(edge_to(SUBJECTS[subject], scope=scope))

        decision = await engine.can_see("acme", VIEWER, make_activity())

        should_match = subject in EXPECTED_MATCHES[scope]
        assert decision.allowed is (not should_match)
        if should_match:
            assert decision.reason == "Mute"
            assert decision.matched_edge_id == edge.id

    @pytest.mark.asyncio
    async def test_target_only_matches_any_target(self, graph, engine):
        """TargetOnly matches when the edge points at any of several targets."""
        other = EntityRef("content", "Post", "other")
        await graph.upsert(edge_to(other, scope=RelationshipScope.TARGET_ONLY))

        decision = await engine.can_see("acme", VIEWER, make_activity(targets=[TARGET, other]))

        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_owner_only_without_owner(self, graph, engine):
        """OwnerOnly never matches an activity without an owner."""
        await graph.upsert(edge_to(OWNER, scope=RelationshipScope.OWNER_ONLY))

        decision = await engine.can_see("acme", VIEWER, make_activity(owner=None))

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_matching_is_case_insensitive(self, graph, engine):
        await graph.upsert(
            edge_to(EntityRef("IDENTITY", "profile", "ACTOR"), scope=RelationshipScope.ACTOR_ONLY)
        )

        decision = await engine.can_see(
            "ACME", EntityRef("Identity", "PROFILE", "Viewer"), make_activity()
        )

        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_block_is_reported_before_mute(self, graph, engine):
        """When both a mute and a block match, the block wins."""
        await graph.upsert(edge_to(ACTOR, kind=RelationshipKind.MUTE))
        block = await graph.upsert(edge_to(OWNER, kind=RelationshipKind.BLOCK))

        decision = await engine.can_see("acme", VIEWER, make_activity())

        assert decision.allowed is False
        assert decision.reason == "Block"
        assert decision.matched_edge_id == block.id

    @pytest.mark.asyncio
    async def test_inactive_edges_are_ignored(self, graph, engine):
        await graph.upsert(edge_to(ACTOR, kind=RelationshipKind.BLOCK, is_active=False))

        decision = await engine.can_see("acme", VIEWER, make_activity())

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_follow_edges_never_deny(self, graph, engine):
        await graph.upsert(edge_to(ACTOR, kind=RelationshipKind.FOLLOW))

        assert (await engine.can_see("acme", VIEWER, make_activity())).allowed is True

    @pytest.mark.asyncio
    async def test_other_viewers_edges_do_not_apply(self, graph, engine):
        """Only edges leaving the viewer are evaluated."""
        await graph.upsert(
            RelationshipEdge(
                tenant_id="acme",
                from_=EntityRef("identity", "Profile", "someone-else"),
                to=ACTOR,
                kind=RelationshipKind.BLOCK,
            )
        )

        assert (await engine.can_see("acme", VIEWER, make_activity())).allowed is True

    @pytest.mark.asyncio
    async def test_filter_narrows_mute(self, graph, engine):
        """A filtered mute only hides matching activity types."""
        await graph.upsert(
            edge_to(ACTOR, filter=RelationshipFilter(type_key_prefixes=["comment."]))
        )

        comment = await engine.can_see("acme", VIEWER, make_activity(type_key="comment.created"))
        status = await engine.can_see("acme", VIEWER, make_activity(type_key="status.posted"))

        assert comment.allowed is False
        assert status.allowed is True

    @pytest.mark.asyncio
    async def test_tenant_scoped(self, graph, engine):
        """Edges of another tenant never deny."""
        await graph.upsert(edge_to(ACTOR, kind=RelationshipKind.BLOCK))

        assert (await engine.can_see("globex", VIEWER, make_activity())).allowed is True
