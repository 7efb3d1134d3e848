"""
Relationship edge filters.

A filter narrows which activities an edge applies to. All conditions are
ANDed; within a list any single match is enough. A missing filter matches
every activity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..entities import Activity, Visibility

MAX_TYPE_KEY_LENGTH = 200
MAX_TAG_LENGTH = 100


def _clean(values: list[str] | None) -> list[str]:
    """Trim, drop empty entries and dedupe case-insensitively (first wins)."""
    seen: set[str] = set()
    cleaned: list[str] = []
    for value in values or []:
        if value is None:
            continue
        trimmed = value.strip()
        folded = trimmed.lower()
        if not trimmed or folded in seen:
            continue
        seen.add(folded)
        cleaned.append(trimmed)
    return cleaned


def _coerce_visibility(value: Any) -> Any:
    """Map a visibility name to Visibility, leaving unknown values for validate()."""
    if isinstance(value, Visibility):
        return value
    if isinstance(value, str):
        folded = value.strip().lower()
        for visibility in Visibility:
            if visibility.value.lower() == folded:
                return visibility
    return value


@dataclass
class RelationshipFilter:
    """Activity filter attached to a relationship edge.

    Attributes:
        type_keys: Exact activity type keys (case-insensitive)
        type_key_prefixes: Activity type key prefixes (case-insensitive)
        required_tags_any: At least one of these tags must be present
        excluded_tags_any: None of these tags may be present
        allowed_visibilities: Activity visibility must be one of these
    """

    type_keys: list[str] = field(default_factory=list)
    type_key_prefixes: list[str] = field(default_factory=list)
    required_tags_any: list[str] = field(default_factory=list)
    excluded_tags_any: list[str] = field(default_factory=list)
    allowed_visibilities: list[Visibility] = field(default_factory=list)

    def normalized(self) -> RelationshipFilter:
        return RelationshipFilter(
            type_keys=_clean(self.type_keys),
            type_key_prefixes=_clean(self.type_key_prefixes),
            required_tags_any=_clean(self.required_tags_any),
            excluded_tags_any=_clean(self.excluded_tags_any),
            allowed_visibilities=list(
                dict.fromkeys(_coerce_visibility(v) for v in self.allowed_visibilities or [])
            ),
        )

    def validate(self, path: str = "filter") -> list[str]:
        """Check entry lengths and visibility values.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []
        limits = (
            ("type_keys", MAX_TYPE_KEY_LENGTH),
            ("type_key_prefixes", MAX_TYPE_KEY_LENGTH),
            ("required_tags_any", MAX_TAG_LENGTH),
            ("excluded_tags_any", MAX_TAG_LENGTH),
        )
        for name, limit in limits:
            for i, value in enumerate(getattr(self, name)):
                if value is not None and len(value) > limit:
                    errors.append(f"{path}.{name}[{i}] exceeds maximum length of {limit}")
        for i, value in enumerate(self.allowed_visibilities):
            if not isinstance(value, Visibility):
                errors.append(
                    f"{path}.allowed_visibilities[{i}] '{value}' is not a valid Visibility"
                )
        return errors

    def matches(self, activity: Activity) -> bool:
        """Check whether the filter applies to an activity."""
        if self.type_keys or self.type_key_prefixes:
            type_key = (activity.type_key or "").strip().lower()
            exact = any(tk.strip().lower() == type_key for tk in self.type_keys)
            prefixed = any(
                type_key.startswith(prefix.strip().lower()) for prefix in self.type_key_prefixes
            )
            if not exact and not prefixed:
                return False

        if self.required_tags_any or self.excluded_tags_any:
            tags = {t.strip().lower() for t in activity.tags if t}

            if self.required_tags_any and not any(
                t.strip().lower() in tags for t in self.required_tags_any
            ):
                return False

            if any(t.strip().lower() in tags for t in self.excluded_tags_any):
                return False

        if self.allowed_visibilities and activity.visibility not in self.allowed_visibilities:
            return False

        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "type_keys": self.type_keys,
            "type_key_prefixes": self.type_key_prefixes,
            "required_tags_any": self.required_tags_any,
            "excluded_tags_any": self.excluded_tags_any,
            "allowed_visibilities": [v.value for v in self.allowed_visibilities],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelationshipFilter:
        """Create from dictionary."""
        return cls(
            type_keys=list(data.get("type_keys", [])),
            type_key_prefixes=list(data.get("type_key_prefixes", [])),
            required_tags_any=list(data.get("required_tags_any", [])),
            excluded_tags_any=list(data.get("excluded_tags_any", [])),
            allowed_visibilities=[Visibility(v) for v in data.get("allowed_visibilities", [])],
        )


def filter_matches(edge_filter: RelationshipFilter | None, activity: Activity) -> bool:
    """A missing filter matches everything."""
    if edge_filter is None:
        return True
    return edge_filter.matches(activity)
