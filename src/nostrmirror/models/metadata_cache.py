"""
Persisted snapshot of profile metadata and relay map.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ._validation import deep_freeze, thaw, validate_mapping, validate_timestamp
from .relay_list import RelayAccess, relay_map_from_dict, relay_map_to_dict


# 12 hours
DEFAULT_CACHE_MAX_AGE = 12 * 60 * 60


@dataclass(frozen=True, slots=True)
class MetadataCache:
    """Profile and relay map as of ``last_updated``.

    ``profile`` is deep-frozen on construction; use
    [to_dict()][nostrmirror.models.metadata_cache.MetadataCache.to_dict] to
    get a mutable JSON-compatible copy.

    Examples:
        ```python
        cache = MetadataCache(last_updated=1700000000, profile={"name": "alice"})
        cache.is_stale(now=1700000000 + 13 * 3600)  # True
        ```
    """

    last_updated: int
    profile: Mapping[str, Any] = field(default_factory=dict)
    relays: Mapping[str, RelayAccess] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_timestamp(self.last_updated, "last_updated")
        validate_mapping(self.profile, "profile")
        validate_mapping(self.relays, "relays")
        object.__setattr__(self, "profile", deep_freeze(self.profile))
        object.__setattr__(self, "relays", dict(self.relays))

    def is_stale(self, now: int, max_age: int = DEFAULT_CACHE_MAX_AGE) -> bool:
        """``True`` when more than ``max_age`` seconds passed since ``last_updated``."""
        return now - self.last_updated > max_age

    def profile_dict(self) -> dict[str, Any]:
        """Mutable copy of ``profile``."""
        result: dict[str, Any] = thaw(self.profile)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastUpdated": self.last_updated,
            "profile": self.profile_dict(),
            "relays": relay_map_to_dict(self.relays),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MetadataCache:
        """Decode the persisted form.

        Raises:
            KeyError: If ``lastUpdated`` is missing.
            TypeError: If a field has the wrong shape.
            ValueError: If ``lastUpdated`` is negative.
        """
        validate_mapping(data, "metadata cache")
        return cls(
            last_updated=data["lastUpdated"],
            profile=data.get("profile") or {},
            relays=relay_map_from_dict(data.get("relays") or {}),
        )
