"""Service layer.

Services depend on [nostrmirror.core][nostrmirror.core],
[nostrmirror.nips][nostrmirror.nips], [nostrmirror.utils][nostrmirror.utils]
and [nostrmirror.models][nostrmirror.models]. Each extends
[BaseService][nostrmirror.core.base_service.BaseService].

Attributes:
    StateSync: Mirrors one identity's profile, relay map and status, and
        publishes notes and status updates.
"""

from .state_sync import StateSync, StateSyncConfig


__all__ = [
    "StateSync",
    "StateSyncConfig",
]
