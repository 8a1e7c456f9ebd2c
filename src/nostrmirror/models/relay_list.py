"""
Relay read/write access maps.

A relay map associates relay URLs with a
[RelayAccess][nostrmirror.models.relay_list.RelayAccess] flag pair. The
map installed in the engine is always derived from a single relay-list
event (see [resolve_relay_list()][nostrmirror.nips.relay_list.resolve_relay_list])
and then overlaid with configured write relays.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ._validation import validate_instance, validate_mapping


@dataclass(frozen=True, slots=True)
class RelayAccess:
    """Read/write permissions for one relay."""

    read: bool = False
    write: bool = False

    def __post_init__(self) -> None:
        validate_instance(self.read, bool, "read")
        validate_instance(self.write, bool, "write")

    def to_dict(self) -> dict[str, bool]:
        return {"read": self.read, "write": self.write}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RelayAccess:
        """Build from a ``{"read": ..., "write": ...}`` mapping; missing flags are ``False``."""
        validate_mapping(data, "relay access")
        return cls(read=bool(data.get("read", False)), write=bool(data.get("write", False)))


RelayMap = Mapping[str, RelayAccess]


def read_relays(relays: RelayMap) -> list[str]:
    """URLs marked readable, in map order."""
    return [url for url, access in relays.items() if access.read]


def write_relays(relays: RelayMap) -> list[str]:
    """URLs marked writable, in map order."""
    return [url for url, access in relays.items() if access.write]


def apply_additional_write_relays(relays: RelayMap, extra: Iterable[str]) -> dict[str, RelayAccess]:
    """Return a copy of ``relays`` with every URL in ``extra`` made writable.

    Existing read flags are kept; URLs not yet in the map are added as
    write-only. Applying the same overlay twice yields the same map.
    """
    result = dict(relays)
    for url in extra:
        current = result.get(url)
        result[url] = RelayAccess(read=current.read if current else False, write=True)
    return result


def relay_map_to_dict(relays: RelayMap) -> dict[str, dict[str, bool]]:
    """JSON-compatible form used for persistence."""
    return {url: access.to_dict() for url, access in relays.items()}


def relay_map_from_dict(data: Mapping[str, Any]) -> dict[str, RelayAccess]:
    """Inverse of [relay_map_to_dict()][nostrmirror.models.relay_list.relay_map_to_dict].

    Raises:
        TypeError: If ``data`` or one of its values is not a mapping.
    """
    validate_mapping(data, "relay map")
    return {str(url): RelayAccess.from_dict(access) for url, access in data.items()}
