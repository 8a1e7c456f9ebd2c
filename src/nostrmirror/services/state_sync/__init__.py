"""State sync service package.

Re-exports all public symbols::

    from nostrmirror.services.state_sync import StateSync, StateSyncConfig
"""

from .cache import MetadataCacheStore
from .configs import DEFAULT_BOOTSTRAP_RELAYS, StateSyncConfig
from .echo import SentEventIds
from .keys import KeyUpdateCoordinator
from .service import StateSync
from .status import UserStatus


__all__ = [
    "DEFAULT_BOOTSTRAP_RELAYS",
    "KeyUpdateCoordinator",
    "MetadataCacheStore",
    "SentEventIds",
    "StateSync",
    "StateSyncConfig",
    "UserStatus",
]
