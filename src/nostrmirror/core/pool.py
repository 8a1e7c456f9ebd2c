"""
Async PostgreSQL connection pool built on asyncpg.

Backs [PostgresStore][nostrmirror.core.store.PostgresStore]. Connections get
JSON/JSONB codecs so dict values round-trip without manual ``json.dumps``.
Query helpers retry on transient connection errors (``InterfaceError``,
``ConnectionDoesNotExistError``) with exponential or linear backoff; query
errors propagate immediately.

[listen()][nostrmirror.core.pool.Pool.listen] pins one pooled connection
for ``LISTEN`` so change notifications keep flowing while other queries use
the rest of the pool.

Examples:
    ```python
    pool = Pool(PoolConfig.model_validate({"database": {"database": "nostr"}}))
    async with pool:
        row = await pool.fetchrow("SELECT value FROM nostrmirror_state WHERE key = $1", "k")
    ```
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from types import TracebackType
from typing import Any, Literal, Self, cast

import asyncpg
from pydantic import BaseModel, Field, SecretStr, ValidationInfo, field_validator, model_validator

from .logger import Logger


NotificationCallback = Callable[[str], Awaitable[None]]


def _json_encode(value: Any) -> str:
    # Pre-serialized strings pass through untouched to avoid double encoding
    if isinstance(value, str):
        return value
    return json.dumps(value)


async def _init_connection(conn: asyncpg.Connection[asyncpg.Record]) -> None:
    """Register JSON/JSONB codecs on every new pooled connection."""
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_encode,
            decoder=json.loads,
            schema="pg_catalog",
        )


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """PostgreSQL connection parameters.

    The password is read from the environment variable named by
    ``password_env``; it never comes from the YAML file.
    """

    host: str = Field(default="localhost", min_length=1, description="Database hostname")
    port: int = Field(default=5432, ge=1, le=65535, description="Database port")
    database: str = Field(default="nostrmirror", min_length=1, description="Database name")
    user: str = Field(default="nostrmirror", min_length=1, description="Database user")
    password_env: str = Field(
        default="NOSTRMIRROR_DB_PASSWORD",  # pragma: allowlist secret
        min_length=1,
        description="Environment variable name for database password",
    )
    password: SecretStr = Field(description="Database password (loaded from password_env)")

    @model_validator(mode="before")
    @classmethod
    def resolve_password(cls, data: Any) -> Any:
        """Resolve the password from the environment when not given."""
        if isinstance(data, dict) and "password" not in data:
            env_var = data.get("password_env", "NOSTRMIRROR_DB_PASSWORD")  # pragma: allowlist secret
            value = os.getenv(env_var)
            if not value:
                raise ValueError(f"{env_var} environment variable not set")
            data["password"] = SecretStr(value)
        return data


class PoolLimitsConfig(BaseModel):
    """Pool size limits. One connection is pinned while listening."""

    min_size: int = Field(default=2, ge=1, le=50, description="Minimum connections")
    max_size: int = Field(default=5, ge=2, le=100, description="Maximum connections")
    acquisition_timeout: float = Field(
        default=10.0, ge=0.1, description="Connection acquisition timeout (seconds)"
    )

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v: int, info: ValidationInfo) -> int:
        """Ensure max_size >= min_size."""
        min_size = info.data.get("min_size", 2)
        if v < min_size:
            raise ValueError(f"max_size ({v}) must be >= min_size ({min_size})")
        return v


class PoolRetryConfig(BaseModel):
    """Backoff between connection attempts and transient query failures."""

    max_attempts: int = Field(default=3, ge=1, le=10, description="Max retry attempts")
    initial_delay: float = Field(default=1.0, ge=0.1, description="Initial retry delay")
    max_delay: float = Field(default=10.0, ge=0.1, description="Maximum retry delay")
    exponential_backoff: bool = Field(default=True, description="Use exponential backoff")

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure max_delay >= initial_delay."""
        initial_delay = info.data.get("initial_delay", 1.0)
        if v < initial_delay:
            raise ValueError(f"max_delay ({v}) must be >= initial_delay ({initial_delay})")
        return v


class PoolConfig(BaseModel):
    """Aggregate pool configuration."""

    database: DatabaseConfig = Field(default_factory=lambda: DatabaseConfig.model_validate({}))
    limits: PoolLimitsConfig = Field(default_factory=PoolLimitsConfig)
    retry: PoolRetryConfig = Field(default_factory=PoolRetryConfig)
    application_name: str = Field(default="nostrmirror", description="Application name")


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class Pool:
    """Async PostgreSQL connection pool manager.

    Created disconnected; call [connect()][nostrmirror.core.pool.Pool.connect]
    or use ``async with``.
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        self._config = config or PoolConfig()
        self._pool: asyncpg.Pool[asyncpg.Record] | None = None
        self._is_connected = False
        self._connection_lock = asyncio.Lock()
        self._listeners: list[tuple[asyncpg.Connection[asyncpg.Record], str, Any]] = []
        self._logger = Logger("pool")

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _retry_delay(self, attempt: int) -> float:
        retry = self._config.retry
        if retry.exponential_backoff:
            delay = retry.initial_delay * (2**attempt)
        else:
            delay = retry.initial_delay * (attempt + 1)
        return float(min(delay, retry.max_delay))

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the asyncpg pool, retrying with backoff.

        Raises:
            ConnectionError: If every attempt fails.
        """
        async with self._connection_lock:
            if self._is_connected:
                return

            db = self._config.database
            self._logger.info(
                "connection_starting", host=db.host, port=db.port, database=db.database
            )

            for attempt in range(self._config.retry.max_attempts):
                try:
                    self._pool = await asyncpg.create_pool(
                        host=db.host,
                        port=db.port,
                        database=db.database,
                        user=db.user,
                        password=db.password.get_secret_value(),
                        min_size=self._config.limits.min_size,
                        max_size=self._config.limits.max_size,
                        timeout=self._config.limits.acquisition_timeout,
                        init=_init_connection,
                        server_settings={"application_name": self._config.application_name},
                    )
                    self._is_connected = True
                    self._logger.info("connection_established")
                    return
                except (asyncpg.PostgresError, OSError, ConnectionError) as e:
                    if attempt + 1 >= self._config.retry.max_attempts:
                        self._logger.error("connection_failed", attempts=attempt + 1, error=str(e))
                        raise ConnectionError(
                            f"Failed to connect after {attempt + 1} attempts: {e}"
                        ) from e
                    delay = self._retry_delay(attempt)
                    self._logger.warning(
                        "connection_retry", attempt=attempt + 1, delay=delay, error=str(e)
                    )
                    await asyncio.sleep(delay)

    async def close(self) -> None:
        """Drop listeners and close the pool. Idempotent."""
        async with self._connection_lock:
            for conn, channel, callback in self._listeners:
                try:
                    await conn.remove_listener(channel, callback)
                finally:
                    if self._pool is not None:
                        await self._pool.release(conn)
            self._listeners.clear()

            if self._pool is not None:
                try:
                    await self._pool.close()
                    self._logger.info("connection_closed")
                finally:
                    self._pool = None
                    self._is_connected = False

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Connection Acquisition
    # -------------------------------------------------------------------------

    def acquire(self) -> AbstractAsyncContextManager[asyncpg.Connection[asyncpg.Record]]:
        """Acquire a pooled connection as an async context manager.

        Raises:
            RuntimeError: If the pool is not connected.
        """
        if not self._is_connected or self._pool is None:
            raise RuntimeError("Pool not connected. Call connect() first.")
        return cast(
            "AbstractAsyncContextManager[asyncpg.Connection[asyncpg.Record]]",
            self._pool.acquire(),
        )

    async def listen(self, channel: str, callback: NotificationCallback) -> None:
        """Subscribe ``callback`` to ``NOTIFY`` messages on ``channel``.

        The callback receives the notification payload and is scheduled as
        a task on the running loop. The listening connection stays checked
        out until [close()][nostrmirror.core.pool.Pool.close].
        """
        if not self._is_connected or self._pool is None:
            raise RuntimeError("Pool not connected. Call connect() first.")

        loop = asyncio.get_running_loop()

        def _on_notify(_conn: Any, _pid: int, _channel: str, payload: str) -> None:
            loop.create_task(callback(payload))

        conn = await self._pool.acquire()
        await conn.add_listener(channel, _on_notify)
        self._listeners.append((conn, channel, _on_notify))
        self._logger.debug("listener_added", channel=channel)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    async def _execute_with_retry(
        self,
        operation: Literal["fetchrow", "execute"],
        query: str,
        args: tuple[Any, ...],
        timeout: float | None,  # noqa: ASYNC109
    ) -> Any:
        max_attempts = self._config.retry.max_attempts
        for attempt in range(max_attempts):
            try:
                async with self.acquire() as conn:
                    method = getattr(conn, operation)
                    return await method(query, *args, timeout=timeout)
            except (asyncpg.InterfaceError, asyncpg.ConnectionDoesNotExistError) as e:
                if attempt + 1 >= max_attempts:
                    self._logger.error(
                        "query_failed", operation=operation, attempts=max_attempts, error=str(e)
                    )
                    raise ConnectionError(
                        f"{operation} failed after {max_attempts} attempts: {e}"
                    ) from e
                delay = self._retry_delay(attempt)
                self._logger.warning(
                    "query_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    delay_s=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
        raise RuntimeError("Unexpected state in _execute_with_retry")

    async def fetchrow(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> asyncpg.Record | None:
        """Execute a query and return the first row (or ``None``)."""
        result = await self._execute_with_retry("fetchrow", query, args, timeout)
        return cast("asyncpg.Record | None", result)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:  # noqa: ASYNC109
        """Execute a statement and return its status tag."""
        result = await self._execute_with_retry("execute", query, args, timeout)
        return cast("str", result)
