"""Shared constants for the models layer.

Enumerations and storage keys used across the nips, utils and services
layers. Placing them here avoids circular dependencies.
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class ServiceName(StrEnum):
    """Service identifiers used in logging and as the ``service`` metrics label."""

    STATE_SYNC = "state_sync"


class EventKind(IntEnum):
    """Nostr event kinds the synchronization engine reads or writes.

    Attributes:
        SET_METADATA: Kind 0, profile metadata as a JSON object.
        TEXT_NOTE: Kind 1, short text note.
        CONTACTS: Kind 3, contact list whose content may carry a relay map.
        RELAY_LIST: Kind 10002, NIP-65 relay list in ``r`` tags.
        USER_STATUS: Kind 30315, NIP-38 user status (parameterized replaceable).
    """

    SET_METADATA = 0
    TEXT_NOTE = 1
    CONTACTS = 3
    RELAY_LIST = 10002
    USER_STATUS = 30315


RELAY_LIST_KINDS: frozenset[int] = frozenset({EventKind.CONTACTS, EventKind.RELAY_LIST})

METADATA_KINDS: tuple[EventKind, ...] = (
    EventKind.SET_METADATA,
    EventKind.CONTACTS,
    EventKind.RELAY_LIST,
)

# ``d`` tag value of the status slot this engine reads and writes
STATUS_IDENTIFIER = "general"


class EngineState(StrEnum):
    """Lifecycle states of the synchronization engine.

    ``DISPOSED`` is terminal; every other state returns to ``READY``.
    """

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SYNCING = "syncing"
    ROTATING = "rotating"
    DISPOSED = "disposed"


class StorageKey(StrEnum):
    """Keys under which the engine persists state in the host stores."""

    PRIVATE_KEY = "nostr-priv-key"
    METADATA_CACHE = "metadataCache"
    KEY_UPDATE_LOCK = "updatePrivateKeyLock"
