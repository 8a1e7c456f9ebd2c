"""nostrmirror exception hierarchy.

Typed exceptions let callers tell configuration mistakes, store failures and
relay problems apart without resorting to bare ``except Exception``.
``asyncio.CancelledError`` is never wrapped.

```text
NostrMirrorError (base -- never raised directly)
├── ConfigurationError   -- invalid config file or values
├── StoreError           -- secret/state store read or write failed
├── ConnectivityError    -- relay unreachable, fetch failed
├── ProtocolError        -- malformed Nostr payload
├── PublishingError      -- signing or dispatch failed
└── EngineStateError     -- operation issued to a disposed engine
```

Note:
    Malformed remote data and single-relay failures are degraded and logged
    by the synchronization engine rather than propagated; ``ProtocolError``
    and ``ConnectivityError`` mostly travel between internal helpers.
"""

from __future__ import annotations


class NostrMirrorError(Exception):
    """Base exception for all nostrmirror errors."""


class ConfigurationError(NostrMirrorError):
    """Invalid or missing configuration (YAML file, env vars, CLI flags)."""


class StoreError(NostrMirrorError):
    """A secret or state store operation failed.

    Raised by [PostgresStore][nostrmirror.core.store.PostgresStore] when the
    underlying database call fails after retries.
    """


class ConnectivityError(NostrMirrorError):
    """A relay could not be reached or did not answer in time."""


class ProtocolError(NostrMirrorError):
    """A Nostr event payload could not be interpreted."""


class PublishingError(NostrMirrorError):
    """An event could not be signed or handed to the relay client."""


class EngineStateError(NostrMirrorError):
    """The synchronization engine is not in a state that accepts the call.

    Raised for every public operation after
    [StateSync.dispose()][nostrmirror.services.state_sync.StateSync.dispose].
    """
