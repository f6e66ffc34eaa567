"""PostgreSQL-backed TaskStore implementation."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from ..errors import TaskNotFoundError
from ..postgres import (
    build_connection_config,
    create_pool,
    postgres_errors,
    quote_identifier,
    validate_identifier,
)
from .base import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskQuery,
    TaskStatus,
    TaskStore,
    apply_update,
    build_task,
    is_timed_out,
    timeout_updates,
    utc_now,
)


_COLUMNS = (
    "id",
    "subject_id",
    "provider",
    "status",
    "progress",
    "message",
    "options",
    "result",
    "error",
    "history",
    "created_at",
    "updated_at",
    "timeout_at",
    "completed_at",
    "failed_at",
    "estimated_completion_at",
)
_SELECT_COLUMNS = ", ".join(_COLUMNS)
_LIVE_VALUES = sorted(status.value for status in LIVE_STATUSES)
_TERMINAL_VALUES = sorted(status.value for status in TERMINAL_STATUSES)


class PostgreSQLTaskStore(TaskStore):
    """PostgreSQL implementation of the TaskStore abstraction.

    - Validates configuration settings (schema, table, pool size).
    - Creates the table and its indexes on first use, including a partial unique
      index that allows at most one live (PENDING / IN_PROGRESS) task per subject.
    - Row locks (SELECT ... FOR UPDATE) serialise concurrent writers to one task."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        schema: Optional[str] = None,
        table: Optional[str] = None,
        max_pool_size: Optional[int] = None,
    ) -> None:
        self._connection_config = build_connection_config(dsn)

        self.schema = validate_identifier(
            (schema or os.getenv("TASK_STORE_POSTGRES_SCHEMA") or "public"),
            "schema",
        )
        self.table = validate_identifier(
            (table or os.getenv("TASK_STORE_POSTGRES_TABLE") or "generation_tasks"),
            "table",
        )
        self._qualified_table = f"{quote_identifier(self.schema)}.{quote_identifier(self.table)}"
        self._status_index = validate_identifier(f"{self.table}_status_idx", "index")
        self._subject_index = validate_identifier(f"{self.table}_subject_idx", "index")
        self._created_at_index = validate_identifier(f"{self.table}_created_at_idx", "index")
        self._live_index = validate_identifier(f"{self.table}_live_subject_uidx", "index")

        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None
        self._ddl_initialized: bool = False

    # Public API
    async def create_task(
        self,
        subject_id: Any,
        provider: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Return the subject's live task id, or insert a new PENDING row.
        The partial unique index turns a concurrent duplicate insert into a no-op."""
        subject = str(subject_id)
        live_filter = f"subject_id = $1 AND status IN ({_sql_list(_LIVE_VALUES)})"

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_SELECT_COLUMNS} FROM {self._qualified_table} "
                    f"WHERE {live_filter} FOR UPDATE",
                    subject,
                )
                now = utc_now()
                if row is not None:
                    existing = _row_to_task(row)
                    if not is_timed_out(now, existing.timeout_at, existing.status):
                        return existing.id
                    await self._write(conn, apply_update(existing, timeout_updates(existing), now))

                task = build_task(subject, provider, options, timeout_seconds=timeout_seconds, now=now)
                inserted = await conn.fetchval(
                    f"""
                    INSERT INTO {self._qualified_table} ({_SELECT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10::jsonb,
                            $11, $12, $13, $14, $15, $16)
                    ON CONFLICT (subject_id) WHERE status IN ({_sql_list(_LIVE_VALUES)})
                    DO NOTHING
                    RETURNING id
                    """,
                    *_task_values(task),
                )
                if inserted is not None:
                    return inserted

                return await conn.fetchval(
                    f"SELECT id FROM {self._qualified_table} WHERE {live_filter}",
                    subject,
                )

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SELECT_COLUMNS} FROM {self._qualified_table} WHERE id = $1",
                task_id,
            )
        return _row_to_task(row) if row is not None else None

    async def update_task(self, task_id: str, **updates) -> Task:
        """Lock the row, merge the updates and write every column back."""
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_SELECT_COLUMNS} FROM {self._qualified_table} "
                    "WHERE id = $1 FOR UPDATE",
                    task_id,
                )
                if row is None:
                    raise TaskNotFoundError(task_id)
                task = apply_update(_row_to_task(row), updates)
                await self._write(conn, task)
                return task

    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        query = query or TaskQuery()
        clauses: List[str] = []
        params: List[Any] = []

        def add(clause: str, value: Any) -> None:
            params.append(value)
            clauses.append(clause.format(n=len(params)))

        if query.status is not None:
            add("status = ${n}", query.status.value)
        if query.subject_id is not None:
            add("subject_id = ${n}", str(query.subject_id))
        if query.provider is not None:
            add("provider = ${n}", query.provider)
        if query.created_after is not None:
            add("created_at >= ${n}", query.created_after)
        if query.created_before is not None:
            add("created_at <= ${n}", query.created_before)
        if query.min_progress is not None:
            add("progress >= ${n}", query.min_progress)

        sql = f"SELECT {_SELECT_COLUMNS} FROM {self._qualified_table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if query.limit:
            params.append(query.limit)
            sql += f" LIMIT ${len(params)}"

        async with self._connection() as conn:
            rows = await conn.fetch(sql, *params)
        return [_row_to_task(row) for row in rows]

    async def delete_task(self, task_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"DELETE FROM {self._qualified_table} WHERE id = $1",
                task_id,
            )

    async def get_metrics(self) -> Dict[str, Any]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT status, COUNT(*) AS count FROM {self._qualified_table} GROUP BY status"
            )
            average = await conn.fetchval(
                f"""
                SELECT AVG(EXTRACT(EPOCH FROM (completed_at - created_at)))
                FROM {self._qualified_table}
                WHERE status = $1 AND completed_at IS NOT NULL
                """,
                TaskStatus.COMPLETED.value,
            )
        counts = {status.value: 0 for status in TaskStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return {
            "total_tasks": sum(counts.values()),
            "by_status": counts,
            "average_completion_seconds": round(float(average)) if average is not None else 0,
        }

    async def cleanup_tasks(self, max_age: timedelta = timedelta(hours=24)) -> int:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                DELETE FROM {self._qualified_table}
                WHERE status IN ({_sql_list(_TERMINAL_VALUES)}) AND updated_at < $1
                RETURNING id
                """,
                utc_now() - max_age,
            )
        return len(rows)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def _write(self, conn: asyncpg.Connection, task: Task) -> None:
        assignments = ", ".join(
            f"{column} = ${index}{'::jsonb' if column in ('options', 'result', 'history') else ''}"
            for index, column in enumerate(_COLUMNS, start=1)
            if column != "id"
        )
        await conn.execute(
            f"UPDATE {self._qualified_table} SET {assignments} WHERE id = $1",
            *_task_values(task),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await create_pool(self._connection_config, self.max_pool_size)
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the asyncpg pool, ensure the schema/table/indexes
        exist on first use, yield it for the caller's query, and release it back
        to the pool afterward."""
        async with postgres_errors("task store access"):
            pool = await self._get_pool()
            conn = await pool.acquire()
            try:
                if not self._ddl_initialized:
                    await self._ensure_schema(conn)
                    self._ddl_initialized = True
                yield conn
            finally:
                await pool.release(conn)

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        if self.schema != "public":
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(self.schema)}")

        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._qualified_table} (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                provider TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                progress INTEGER NOT NULL DEFAULT 0,
                message TEXT,
                options JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                result JSONB,
                error TEXT,
                history JSONB NOT NULL DEFAULT '[]'::jsonb,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                timeout_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                failed_at TIMESTAMPTZ,
                estimated_completion_at TIMESTAMPTZ
            )
            """
        )
        for index, column in (
            (self._status_index, "status"),
            (self._subject_index, "subject_id"),
            (self._created_at_index, "created_at"),
        ):
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {quote_identifier(index)} "
                f"ON {self._qualified_table} ({column})"
            )
        await conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {quote_identifier(self._live_index)}
            ON {self._qualified_table} (subject_id)
            WHERE status IN ({_sql_list(_LIVE_VALUES)})
            """
        )


def _sql_list(values: List[str]) -> str:
    """Inline a list of fixed enum literals; never used with user input."""
    return ", ".join(f"'{value}'" for value in values)


def _task_values(task: Task) -> tuple:
    return (
        task.id,
        task.subject_id,
        task.provider,
        task.status.value,
        task.progress,
        task.message,
        task.options,
        task.result,
        task.error,
        task.history,
        task.created_at,
        task.updated_at,
        task.timeout_at,
        task.completed_at,
        task.failed_at,
        task.estimated_completion_at,
    )


def _row_to_task(row: asyncpg.Record) -> Task:
    return Task(
        id=row["id"],
        subject_id=row["subject_id"],
        provider=row["provider"] or "",
        status=TaskStatus(row["status"]),
        progress=row["progress"] or 0,
        message=row["message"] or "",
        options=row["options"] or {},
        result=row["result"],
        error=row["error"],
        history=row["history"] or [],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        timeout_at=row["timeout_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
        estimated_completion_at=row["estimated_completion_at"],
    )
