"""
Unit tests for recipient resolution.

Tests cover:
- Followers and subscribers of actor, targets and owner
- Governance refusal before any read
- Recipient expansion
- Visibility filtering and deduplication
"""

import tempfile

import pytest

from graphinbox.entities import Activity, EntityRef, RelationshipKind, RelationshipScope
from graphinbox.errors import PolicyViolationError, TransientStoreError
from graphinbox.graph import RelationshipEdge, RelationshipGraphStore, VisibilityDecisionEngine
from graphinbox.inbox import RecipientResolver
from graphinbox.policies import StaticGovernancePolicy

ACTOR = EntityRef("identity", "Profile", "u1")
POST = EntityRef("content", "Post", "p1")
OWNER = EntityRef("identity", "Profile", "owner")
TEAM = EntityRef("identity", "Team", "t1")


def profile(user_id: str) -> EntityRef:
    return EntityRef("identity", "Profile", user_id)


def make_activity(**overrides) -> Activity:
    values = dict(
        id="a1",
        tenant_id="acme",
        type_key="status.posted",
        actor=ACTOR,
        targets=[],
    )
    values.update(overrides)
    return Activity(**values)


class TeamExpansionPolicy:
    """Expands the team into its members; everyone else is themselves."""

    def __init__(self, members):
        self.members = members

    async def expand(self, tenant_id, recipient):
        if recipient == TEAM:
            return list(self.members)
        return [recipient]


class FailingExpansionPolicy:
    """Expansion whose directory lookup times out for the team."""

    async def expand(self, tenant_id, recipient):
        if recipient == TEAM:
            raise TransientStoreError("directory lookup timed out", "expand")
        return [recipient]


class RaisingGovernancePolicy(StaticGovernancePolicy):
    """Governance oracle that is unavailable."""

    async def is_targetable(self, tenant_id, entity):
        raise RuntimeError("governance unavailable")


class LockedViewerGraphStore(RelationshipGraphStore):
    """Graph store whose edge queries fail for one viewer."""

    def __init__(self, data_dir, locked_viewer):
        super().__init__(data_dir)
        self.locked_viewer = locked_viewer
        self.inbound_lookups = 0

    async def query(self, tenant_id, from_=None, *args, **kwargs):
        if from_ is not None and from_ == self.locked_viewer:
            raise TransientStoreError("database is locked", "graph")
        return await super().query(tenant_id, from_, *args, **kwargs)

    async def get_inbound_entities(self, tenant_id, to, kind):
        self.inbound_lookups += 1
        return await super().get_inbound_entities(tenant_id, to, kind)


class TestRecipientResolver:
    """Tests for RecipientResolver.resolve."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def graph(self, data_dir):
        return RelationshipGraphStore(data_dir)

    @pytest.fixture
    def governance(self):
        return StaticGovernancePolicy()

    @pytest.fixture
    def resolver(self, graph, governance):
        return RecipientResolver(graph, VisibilityDecisionEngine(graph), governance)

    async def link(self, graph, from_, to, kind=RelationshipKind.FOLLOW, **kwargs):
        return await graph.upsert(
            RelationshipEdge(tenant_id="acme", from_=from_, to=to, kind=kind, **kwargs)
        )

    @pytest.mark.asyncio
    async def test_no_audience_resolves_empty(self, resolver):
        assert await resolver.resolve("acme", make_activity()) == []

    @pytest.mark.asyncio
    async def test_followers_of_actor(self, resolver, graph):
        await self.link(graph, profile("u2"), ACTOR)
        await self.link(graph, profile("u3"), ACTOR, RelationshipKind.SUBSCRIBE)

        recipients = await resolver.resolve("acme", make_activity())

        assert recipients == [profile("u2"), profile("u3")]

    @pytest.mark.asyncio
    async def test_followers_of_targets(self, resolver, graph):
        await self.link(graph, profile("u4"), POST, RelationshipKind.SUBSCRIBE)

        recipients = await resolver.resolve("acme", make_activity(targets=[POST]))

        assert recipients == [profile("u4")]

    @pytest.mark.asyncio
    async def test_owner_subscribers_only(self, resolver, graph):
        """Only Subscribe edges to the owner count, not Follow edges."""
        await self.link(graph, profile("u5"), OWNER, RelationshipKind.SUBSCRIBE)
        await self.link(graph, profile("u6"), OWNER, RelationshipKind.FOLLOW)

        recipients = await resolver.resolve("acme", make_activity(owner=OWNER))

        assert recipients == [profile("u5")]

    @pytest.mark.asyncio
    async def test_inactive_edges_are_ignored(self, resolver, graph):
        await self.link(graph, profile("u2"), ACTOR, is_active=False)

        assert await resolver.resolve("acme", make_activity()) == []

    @pytest.mark.asyncio
    async def test_recipients_are_deduplicated(self, resolver, graph):
        """Following both the actor and the target yields one recipient."""
        await self.link(graph, profile("u2"), ACTOR)
        await self.link(graph, profile("U2"), POST, RelationshipKind.SUBSCRIBE)

        recipients = await resolver.resolve("acme", make_activity(targets=[POST]))

        assert len(recipients) == 1
        assert recipients[0] == profile("u2")

    @pytest.mark.asyncio
    async def test_muted_recipients_are_dropped(self, resolver, graph):
        await self.link(graph, profile("u2"), ACTOR)
        await self.link(graph, profile("u3"), ACTOR)
        await self.link(
            graph,
            profile("u2"),
            ACTOR,
            RelationshipKind.MUTE,
            scope=RelationshipScope.ACTOR_ONLY,
        )

        recipients = await resolver.resolve("acme", make_activity())

        assert recipients == [profile("u3")]

    @pytest.mark.asyncio
    async def test_blocking_recipients_are_dropped(self, resolver, graph):
        await self.link(graph, profile("u2"), POST, RelationshipKind.SUBSCRIBE)
        await self.link(graph, profile("u2"), ACTOR, RelationshipKind.BLOCK)

        recipients = await resolver.resolve("acme", make_activity(targets=[POST]))

        assert recipients == []

    @pytest.mark.asyncio
    async def test_expansion_policy(self, graph, governance):
        members = [profile("m1"), profile("m2")]
        resolver = RecipientResolver(
            graph, VisibilityDecisionEngine(graph), governance, TeamExpansionPolicy(members)
        )
        await self.link(graph, TEAM, ACTOR, RelationshipKind.SUBSCRIBE)
        await self.link(graph, profile("m1"), ACTOR)

        recipients = await resolver.resolve("acme", make_activity())

        assert recipients == [profile("m1"), profile("m2")]

    @pytest.mark.asyncio
    async def test_expanded_members_are_visibility_checked(self, graph, governance):
        resolver = RecipientResolver(
            graph,
            VisibilityDecisionEngine(graph),
            governance,
            TeamExpansionPolicy([profile("m1"), profile("m2")]),
        )
        await self.link(graph, TEAM, ACTOR, RelationshipKind.SUBSCRIBE)
        await self.link(graph, profile("m2"), ACTOR, RelationshipKind.MUTE)

        recipients = await resolver.resolve("acme", make_activity())

        assert recipients == [profile("m1")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", ["actor", "target", "owner"])
    async def test_non_targetable_subject_raises(self, resolver, graph, governance, role):
        await self.link(graph, profile("u2"), ACTOR)
        refused = {"actor": ACTOR, "target": POST, "owner": OWNER}[role]
        governance.set_non_targetable(refused)

        with pytest.raises(PolicyViolationError) as exc_info:
            await resolver.resolve("acme", make_activity(targets=[POST], owner=OWNER))

        assert exc_info.value.entity == refused
        assert exc_info.value.reason == f"{role.capitalize()} is not targetable"

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, resolver, graph):
        await self.link(graph, profile("u2"), ACTOR)

        assert await resolver.resolve("globex", make_activity(tenant_id="globex")) == []

    @pytest.mark.asyncio
    async def test_expansion_failure_is_isolated(self, graph, governance):
        """A candidate whose expansion fails is reported; the others still resolve."""
        resolver = RecipientResolver(
            graph, VisibilityDecisionEngine(graph), governance, FailingExpansionPolicy()
        )
        await self.link(graph, TEAM, ACTOR)
        await self.link(graph, profile("u3"), ACTOR)

        resolution = await resolver.resolve_detailed("acme", make_activity())

        assert resolution.recipients == [profile("u3")]
        assert [f.recipient for f in resolution.failed] == [TEAM]
        assert "directory lookup timed out" in resolution.failed[0].error
        assert await resolver.resolve("acme", make_activity()) == [profile("u3")]

    @pytest.mark.asyncio
    async def test_visibility_failure_is_isolated(self, data_dir, governance):
        graph = LockedViewerGraphStore(data_dir, locked_viewer=profile("u2"))
        resolver = RecipientResolver(graph, VisibilityDecisionEngine(graph), governance)
        await self.link(graph, profile("u2"), ACTOR)
        await self.link(graph, profile("u3"), ACTOR)

        resolution = await resolver.resolve_detailed("acme", make_activity())

        assert resolution.recipients == [profile("u3")]
        assert [f.recipient for f in resolution.failed] == [profile("u2")]
        assert resolution.failed[0].error == "database is locked"

    @pytest.mark.asyncio
    async def test_governance_error_aborts_before_lookups(self, data_dir):
        """A governance oracle that raises stops resolution before any graph read."""
        graph = LockedViewerGraphStore(data_dir, locked_viewer=None)
        resolver = RecipientResolver(
            graph, VisibilityDecisionEngine(graph), RaisingGovernancePolicy()
        )
        await self.link(graph, profile("u2"), ACTOR)

        with pytest.raises(RuntimeError, match="governance unavailable"):
            await resolver.resolve_detailed("acme", make_activity(targets=[POST]))

        assert graph.inbound_lookups == 0
