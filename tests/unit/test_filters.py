"""
Unit tests for relationship edge filters.

Tests cover:
- Normalization (trim, drop empty, case-insensitive dedupe)
- Length validation
- Matching on type keys, prefixes, tags and visibility
"""

import pytest

from graphinbox.entities import Activity, EntityRef, Visibility
from graphinbox.graph.filters import RelationshipFilter, filter_matches


def make_activity(type_key="status.posted", tags=None, visibility=Visibility.PUBLIC):
    return Activity(
        id="a1",
        tenant_id="acme",
        type_key=type_key,
        actor=EntityRef("identity", "Profile", "u1"),
        tags=tags or [],
        visibility=visibility,
    )


class TestFilterNormalization:
    """Tests for RelationshipFilter.normalized()."""

    def test_trims_drops_empty_and_dedupes(self):
        """Lists are trimmed, empties dropped, duplicates removed ignoring case."""
        f = RelationshipFilter(
            type_keys=[" status.posted ", "", "STATUS.POSTED", "  "],
            required_tags_any=["News", "news", " sports"],
        ).normalized()

        assert f.type_keys == ["status.posted"]
        assert f.required_tags_any == ["News", "sports"]

    def test_dedupes_visibilities(self):
        f = RelationshipFilter(
            allowed_visibilities=[Visibility.PUBLIC, Visibility.PUBLIC, Visibility.INTERNAL]
        ).normalized()

        assert f.allowed_visibilities == [Visibility.PUBLIC, Visibility.INTERNAL]

    def test_visibility_names_are_coerced(self):
        """Visibility names are accepted in any case and mapped to the enum."""
        f = RelationshipFilter(
            allowed_visibilities=[" public", "Private", Visibility.PUBLIC]
        ).normalized()

        assert f.allowed_visibilities == [Visibility.PUBLIC, Visibility.PRIVATE]
        assert f.validate() == []


class TestFilterValidation:
    """Tests for RelationshipFilter.validate()."""

    def test_valid_filter(self):
        assert RelationshipFilter(type_keys=["a" * 200], excluded_tags_any=["t" * 100]).validate() == []

    def test_type_key_too_long(self):
        errors = RelationshipFilter(type_key_prefixes=["x" * 201]).validate()
        assert errors == ["filter.type_key_prefixes[0] exceeds maximum length of 200"]

    def test_tag_too_long(self):
        errors = RelationshipFilter(required_tags_any=["ok", "t" * 101]).validate()
        assert errors == ["filter.required_tags_any[1] exceeds maximum length of 100"]

    def test_unknown_visibility(self):
        errors = RelationshipFilter(allowed_visibilities=["Secret"]).normalized().validate()
        assert errors == ["filter.allowed_visibilities[0] 'Secret' is not a valid Visibility"]


class TestFilterMatching:
    """Tests for RelationshipFilter.matches()."""

    def test_missing_filter_matches_everything(self):
        assert filter_matches(None, make_activity()) is True

    def test_empty_filter_matches_everything(self):
        assert RelationshipFilter().matches(make_activity()) is True

    def test_exact_type_key_is_case_insensitive(self):
        f = RelationshipFilter(type_keys=["Status.Posted"])

        assert f.matches(make_activity("status.posted"))
        assert not f.matches(make_activity("status.edited"))

    def test_prefix_match(self):
        f = RelationshipFilter(type_key_prefixes=["comment."])

        assert f.matches(make_activity("Comment.Created"))
        assert not f.matches(make_activity("status.posted"))

    def test_exact_or_prefix(self):
        """Either an exact key or a prefix is enough."""
        f = RelationshipFilter(type_keys=["status.posted"], type_key_prefixes=["comment."])

        assert f.matches(make_activity("status.posted"))
        assert f.matches(make_activity("comment.created"))
        assert not f.matches(make_activity("reaction.added"))

    def test_required_tags_any(self):
        f = RelationshipFilter(required_tags_any=["news", "sports"])

        assert f.matches(make_activity(tags=["Sports"]))
        assert not f.matches(make_activity(tags=["music"]))
        assert not f.matches(make_activity(tags=[]))

    def test_excluded_tags_any(self):
        f = RelationshipFilter(excluded_tags_any=["spoiler"])

        assert f.matches(make_activity(tags=["news"]))
        assert not f.matches(make_activity(tags=["news", "SPOILER"]))

    @pytest.mark.parametrize(
        "visibility,expected",
        [
            (Visibility.PUBLIC, True),
            (Visibility.INTERNAL, True),
            (Visibility.PRIVATE, False),
        ],
    )
    def test_allowed_visibilities(self, visibility, expected):
        f = RelationshipFilter(allowed_visibilities=[Visibility.PUBLIC, Visibility.INTERNAL])
        assert f.matches(make_activity(visibility=visibility)) is expected

    def test_conditions_are_anded(self):
        """All non-empty conditions must hold."""
        f = RelationshipFilter(type_key_prefixes=["status"], required_tags_any=["news"])

        assert f.matches(make_activity("status.posted", tags=["news"]))
        assert not f.matches(make_activity("status.posted", tags=["music"]))
        assert not f.matches(make_activity("comment.created", tags=["news"]))

    def test_dict_round_trip(self):
        f = RelationshipFilter(
            type_keys=["status.posted"],
            allowed_visibilities=[Visibility.PRIVATE],
        )

        assert RelationshipFilter.from_dict(f.to_dict()) == f
