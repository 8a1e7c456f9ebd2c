r"""nostrmirror -- local mirror of a Nostr identity's state.

Keeps profile metadata, relay list and user status in sync with the user's
relays and publishes signed updates back to them.

Imports flow strictly downward:

```text
              services         Synchronization engine
             /   |   \
          core  nips  utils    Stores, protocol parsing, relay I/O
             \   |   /
              models           Pure frozen dataclasses (zero I/O)
```

Note:
    Top-level imports (``from nostrmirror import StateSync``) use lazy
    loading and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("nostrmirror")

__all__ = [
    "BaseService",
    "Event",
    "EventKind",
    "HostContext",
    "Logger",
    "MemoryStore",
    "MetadataCache",
    "RelayAccess",
    "StateSync",
    "StateSyncConfig",
    "UserStatusValue",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseService": ("nostrmirror.core", "BaseService"),
    "HostContext": ("nostrmirror.core", "HostContext"),
    "Logger": ("nostrmirror.core", "Logger"),
    "MemoryStore": ("nostrmirror.core", "MemoryStore"),
    "Event": ("nostrmirror.models", "Event"),
    "EventKind": ("nostrmirror.models", "EventKind"),
    "MetadataCache": ("nostrmirror.models", "MetadataCache"),
    "RelayAccess": ("nostrmirror.models", "RelayAccess"),
    "UserStatusValue": ("nostrmirror.models", "UserStatusValue"),
    "StateSync": ("nostrmirror.services", "StateSync"),
    "StateSyncConfig": ("nostrmirror.services", "StateSyncConfig"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value  # Cache for subsequent access
        return value
    raise AttributeError(f"module 'nostrmirror' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
