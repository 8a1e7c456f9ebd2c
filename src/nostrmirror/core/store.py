"""
Persistent stores supplied by the host.

Two interfaces separate secret material from ordinary state:

* [SecretStore][nostrmirror.core.store.SecretStore]: string secrets with
  change notification. Listeners are called for every write or delete,
  including writes made by the current process.
* [KeyValueStore][nostrmirror.core.store.KeyValueStore]: JSON-compatible
  values; setting ``None`` deletes the key.

[MemoryStore][nostrmirror.core.store.MemoryStore] implements both in-process
and is what tests and single-shot CLI runs use.
[PostgresStore][nostrmirror.core.store.PostgresStore] implements both on one
shared table and propagates secret changes between processes with
``LISTEN/NOTIFY``.

See Also:
    [HostContext][nostrmirror.core.store.HostContext]: Bundle handed to the
        state sync engine.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Literal

import asyncpg
from pydantic import BaseModel, Field

from .exceptions import StoreError
from .logger import Logger
from .pool import Pool, PoolConfig


ChangeListener = Callable[[str], None]

SECRET_CHANGE_CHANNEL = "nostrmirror_secret_change"

_logger = Logger("store")


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class SecretStore(ABC):
    """Secret storage with per-key change notification."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def store(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener``; return a callable that unregisters it."""


class KeyValueStore(ABC):
    """Persistent storage for JSON-compatible state."""

    @abstractmethod
    async def get(self, key: str) -> Any: ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, or delete the key when ``value`` is ``None``."""


class _ListenerRegistry:
    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str) -> None:
        for listener in list(self._listeners):
            listener(key)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStore(_ListenerRegistry, SecretStore, KeyValueStore):
    """Dictionary-backed store. Listeners are notified synchronously."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any:
        return self._data.get(key)

    async def store(self, key: str, value: str) -> None:
        self._data[key] = value
        self._notify(key)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._notify(key)

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._data


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS nostrmirror_state (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    updated_at BIGINT NOT NULL DEFAULT EXTRACT(EPOCH FROM NOW())::BIGINT,
    PRIMARY KEY (namespace, key)
)
"""

_SELECT = "SELECT value FROM nostrmirror_state WHERE namespace = $1 AND key = $2"

_UPSERT = """
INSERT INTO nostrmirror_state (namespace, key, value, updated_at)
VALUES ($1, $2, $3, EXTRACT(EPOCH FROM NOW())::BIGINT)
ON CONFLICT (namespace, key)
DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
"""

_DELETE = "DELETE FROM nostrmirror_state WHERE namespace = $1 AND key = $2"

_NOTIFY = "SELECT pg_notify($1, $2)"


class PostgresStore(_ListenerRegistry, SecretStore, KeyValueStore):
    """Store rows in ``nostrmirror_state`` under a fixed ``namespace``.

    Call [initialize()][nostrmirror.core.store.PostgresStore.initialize]
    once after the pool is connected. For stores with ``notify=True`` every
    ``store``/``delete`` issues a ``NOTIFY`` whose payload is
    ``namespace:key``; all processes listening on the channel (this one
    included) dispatch it to their listeners.
    """

    def __init__(self, pool: Pool, namespace: str, *, notify: bool = False) -> None:
        super().__init__()
        self._pool = pool
        self._namespace = namespace
        self._notify_enabled = notify

    @property
    def namespace(self) -> str:
        return self._namespace

    async def initialize(self) -> None:
        """Create the table if needed and start listening for changes."""
        try:
            await self._pool.execute(_CREATE_TABLE)
            if self._notify_enabled:
                await self._pool.listen(SECRET_CHANGE_CHANNEL, self._on_notification)
        except (asyncpg.PostgresError, ConnectionError, RuntimeError) as e:
            raise StoreError(f"failed to initialize store {self._namespace}: {e}") from e

    async def _on_notification(self, payload: str) -> None:
        namespace, _, key = payload.partition(":")
        if namespace != self._namespace:
            return
        _logger.debug("store_change_received", namespace=namespace, key=key)
        self._notify(key)

    async def get(self, key: str) -> Any:
        try:
            row = await self._pool.fetchrow(_SELECT, self._namespace, key)
        except (asyncpg.PostgresError, ConnectionError) as e:
            raise StoreError(f"failed to read {self._namespace}/{key}: {e}") from e
        return None if row is None else row["value"]

    async def _write(self, key: str, value: Any) -> None:
        try:
            if value is None:
                await self._pool.execute(_DELETE, self._namespace, key)
            else:
                await self._pool.execute(_UPSERT, self._namespace, key, json.dumps(value))
        except (asyncpg.PostgresError, ConnectionError) as e:
            raise StoreError(f"failed to write {self._namespace}/{key}: {e}") from e

    async def _publish_change(self, key: str) -> None:
        if not self._notify_enabled:
            self._notify(key)
            return
        try:
            await self._pool.execute(_NOTIFY, SECRET_CHANGE_CHANNEL, f"{self._namespace}:{key}")
        except (asyncpg.PostgresError, ConnectionError) as e:
            raise StoreError(f"failed to notify change of {key}: {e}") from e

    async def store(self, key: str, value: str) -> None:
        await self._write(key, value)
        await self._publish_change(key)

    async def delete(self, key: str) -> None:
        await self._write(key, None)
        await self._publish_change(key)

    async def set(self, key: str, value: Any) -> None:
        await self._write(key, value)


# ---------------------------------------------------------------------------
# Host context
# ---------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """Selects the backend behind [HostContext][nostrmirror.core.store.HostContext]."""

    backend: Literal["memory", "postgres"] = Field(
        default="memory", description="Store backend"
    )
    pool: PoolConfig | None = Field(
        default=None, description="Connection pool settings (postgres backend only)"
    )


@dataclass(frozen=True, slots=True)
class HostContext:
    """The stores the host provides to the state sync engine."""

    secrets: SecretStore
    state: KeyValueStore

    @classmethod
    def in_memory(cls) -> HostContext:
        return cls(secrets=MemoryStore(), state=MemoryStore())


@asynccontextmanager
async def open_host_context(config: StoreConfig) -> AsyncIterator[HostContext]:
    """Build a [HostContext][nostrmirror.core.store.HostContext] for ``config``.

    The postgres backend connects a [Pool][nostrmirror.core.pool.Pool] for
    the duration of the context and closes it on exit.
    """
    if config.backend == "memory":
        yield HostContext.in_memory()
        return

    pool = Pool(config.pool or PoolConfig())
    async with pool:
        secrets = PostgresStore(pool, "secret", notify=True)
        state = PostgresStore(pool, "state")
        await secrets.initialize()
        await state.initialize()
        yield HostContext(secrets=secrets, state=state)
