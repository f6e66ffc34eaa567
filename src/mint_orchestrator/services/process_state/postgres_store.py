"""PostgreSQL-backed ProcessStateStore using a key/value ``system_state`` table."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from ..postgres import (
    build_connection_config,
    create_pool,
    postgres_errors,
    quote_identifier,
    validate_identifier,
)
from .base import ProcessState, ProcessStateStore


class PostgreSQLProcessStateStore(ProcessStateStore):
    """Stores the document as JSONB in one row keyed by ``key``; saves are upserts."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        key: str = "cron",
        schema: Optional[str] = None,
        table: Optional[str] = None,
    ) -> None:
        self._connection_config = build_connection_config(dsn)
        self.key = key
        self.schema = validate_identifier(
            (schema or os.getenv("TASK_STORE_POSTGRES_SCHEMA") or "public"),
            "schema",
        )
        self.table = validate_identifier(
            (table or os.getenv("STATE_STORE_POSTGRES_TABLE") or "system_state"),
            "table",
        )
        self._qualified_table = f"{quote_identifier(self.schema)}.{quote_identifier(self.table)}"
        self._pool: Optional[asyncpg.Pool] = None
        self._ddl_initialized = False

    async def load(self) -> ProcessState:
        async with self._connection() as conn:
            value = await conn.fetchval(
                f"SELECT value FROM {self._qualified_table} WHERE id = $1",
                self.key,
            )
        return ProcessState.from_dict(value)

    async def save(self, state: ProcessState) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self._qualified_table} (id, value, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (id) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                self.key,
                state.to_dict(),
            )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        async with postgres_errors("process state access"):
            if self._pool is None:
                self._pool = await create_pool(self._connection_config, max_size=2)
            conn = await self._pool.acquire()
            try:
                if not self._ddl_initialized:
                    if self.schema != "public":
                        await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(self.schema)}")
                    await conn.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {self._qualified_table} (
                            id TEXT PRIMARY KEY,
                            value JSONB NOT NULL,
                            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                        )
                        """
                    )
                    self._ddl_initialized = True
                yield conn
            finally:
                await self._pool.release(conn)
