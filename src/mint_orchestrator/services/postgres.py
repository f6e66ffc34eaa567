"""Connection helpers shared by the PostgreSQL-backed stores."""

from __future__ import annotations

import json
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg

from ..utils import env_int, require_env
from .errors import StoreUnavailableError


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(value: str, label: str) -> str:
    """Ensure schema, table and index names conform to postgres naming conventions.
    Names must begin with a letter or underscore; subsequent characters can be
    letters, digits or underscores. Prevents SQL injection / invalid names."""
    if not value:
        raise ValueError(f"Postgres {label} name is empty.")
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(
            f"Invalid {label} '{value}'. "
            "Use letters, digits and underscores, starting with a letter or underscore."
        )
    return value


def quote_identifier(identifier: str) -> str:
    """Double-quote an already validated identifier."""
    return f'"{identifier}"'


@dataclass
class ConnectionConfig:
    """Either a DSN or keyword arguments for ``asyncpg.create_pool``."""
    kwargs: Dict[str, Any]
    dsn: Optional[str] = None


def build_connection_config(dsn: Optional[str] = None) -> ConnectionConfig:
    """Collect the connection information used to establish the asyncpg pool,
    preferring an explicit DSN, then DATABASE_URL, then the PG* variables."""
    dsn = dsn or os.getenv("DATABASE_URL")
    if dsn:
        return ConnectionConfig(kwargs={}, dsn=dsn)

    return ConnectionConfig(
        kwargs={
            "host": require_env("PGHOST", "hostname of the Postgres instance"),
            "port": int(require_env("PGPORT", "port number")),
            "user": require_env("PGUSER", "database role/user"),
            "password": require_env("PGPASSWORD", "database role password"),
            "database": require_env("PGDATABASE", "target database name"),
        },
        dsn=None,
    )


async def init_connection(conn: asyncpg.Connection) -> None:
    """Task options, results, history and the process-state document are stored as JSONB."""
    await conn.set_type_codec(
        "json",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


async def create_pool(config: ConnectionConfig, max_size: Optional[int] = None) -> asyncpg.Pool:
    kwargs = dict(config.kwargs)
    if config.dsn:
        kwargs["dsn"] = config.dsn
    try:
        return await asyncpg.create_pool(
            min_size=1,
            max_size=max_size or env_int("POSTGRES_POOL_SIZE", default=10),
            init=init_connection,
            **kwargs,
        )
    except (OSError, asyncpg.PostgresConnectionError) as exc:
        raise StoreUnavailableError(f"Failed to connect to Postgres: {exc}") from exc


@asynccontextmanager
async def postgres_errors(operation: str) -> AsyncIterator[None]:
    """Translate connectivity failures into StoreUnavailableError."""
    try:
        yield
    except (
        OSError,
        asyncpg.PostgresConnectionError,
        asyncpg.InterfaceError,
        asyncpg.CannotConnectNowError,
    ) as exc:
        raise StoreUnavailableError(f"Postgres unavailable during {operation}: {exc}") from exc
