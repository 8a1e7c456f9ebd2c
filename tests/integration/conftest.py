"""Integration test fixtures providing ephemeral PostgreSQL via testcontainers.

The PostgresContainer is session-scoped to avoid the Docker startup cost per
test. The state table is dropped before every test for isolation.
"""

from __future__ import annotations

import asyncpg
import pytest
from pydantic import SecretStr
from testcontainers.postgres import PostgresContainer

from nostrmirror.core.pool import DatabaseConfig, Pool, PoolConfig


@pytest.fixture(scope="session")
def pg_container():
    """Spawn an ephemeral PostgreSQL 16 container for the test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        yield pg


@pytest.fixture(scope="session")
def pg_dsn(pg_container: PostgresContainer) -> dict[str, str | int]:
    return {
        "host": pg_container.get_container_host_ip(),
        "port": int(pg_container.get_exposed_port(5432)),
        "database": pg_container.dbname,
        "user": pg_container.username,
        "password": pg_container.password,
    }


@pytest.fixture
def pool_config(pg_dsn: dict[str, str | int]) -> PoolConfig:
    return PoolConfig(
        database=DatabaseConfig(
            host=str(pg_dsn["host"]),
            port=int(pg_dsn["port"]),
            database=str(pg_dsn["database"]),
            user=str(pg_dsn["user"]),
            password=SecretStr(str(pg_dsn["password"])),
        ),
    )


@pytest.fixture
async def pool(pg_dsn: dict[str, str | int], pool_config: PoolConfig):
    """A connected Pool on a database without the state table."""
    conn = await asyncpg.connect(
        host=str(pg_dsn["host"]),
        port=int(pg_dsn["port"]),
        database=str(pg_dsn["database"]),
        user=str(pg_dsn["user"]),
        password=str(pg_dsn["password"]),
    )
    try:
        await conn.execute("DROP TABLE IF EXISTS nostrmirror_state")
    finally:
        await conn.close()

    async with Pool(pool_config) as connected:
        yield connected
