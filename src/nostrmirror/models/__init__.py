"""Pure frozen dataclasses with zero I/O for Nostr identity state.

The models layer is the foundation of the package: it depends only on the
standard library. Every model uses ``@dataclass(frozen=True, slots=True)``
and validates in ``__post_init__`` so invalid instances never escape the
constructor.

Attributes:
    Event: Plain-value copy of a signed Nostr event.
    RelayAccess: Read/write flags for one relay URL.
    MetadataCache: Persisted profile plus relay map with staleness check.
    UserStatusValue: NIP-38 status message, link and NIP-40 expiration.
    EventKind: Event kinds read or written by the engine.
"""

from .constants import (
    METADATA_KINDS,
    RELAY_LIST_KINDS,
    STATUS_IDENTIFIER,
    EngineState,
    EventKind,
    ServiceName,
    StorageKey,
)
from .event import Event, Tag
from .metadata_cache import DEFAULT_CACHE_MAX_AGE, MetadataCache
from .relay_list import (
    RelayAccess,
    RelayMap,
    apply_additional_write_relays,
    read_relays,
    relay_map_from_dict,
    relay_map_to_dict,
    write_relays,
)
from .user_status import EMPTY_STATUS, UserStatusValue


__all__ = [
    "DEFAULT_CACHE_MAX_AGE",
    "EMPTY_STATUS",
    "METADATA_KINDS",
    "RELAY_LIST_KINDS",
    "STATUS_IDENTIFIER",
    "EngineState",
    "Event",
    "EventKind",
    "MetadataCache",
    "RelayAccess",
    "RelayMap",
    "ServiceName",
    "StorageKey",
    "Tag",
    "UserStatusValue",
    "apply_additional_write_relays",
    "read_relays",
    "relay_map_from_dict",
    "relay_map_to_dict",
    "write_relays",
]
