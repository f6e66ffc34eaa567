"""
Task store package entrypoint.

Provides the factory for selecting the desired backend. There is no module-level
store instance; the orchestrator context owns the one it builds.
"""

from __future__ import annotations

import os
from typing import Optional

from ...utils import env_int
from .base import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskQuery,
    TaskStatus,
    TaskStore,
    apply_update,
    is_timed_out,
)
from .memory_store import InMemoryTaskStore


__all__ = [
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "InMemoryTaskStore",
    "Task",
    "TaskQuery",
    "TaskStatus",
    "TaskStore",
    "apply_update",
    "create_task_store",
    "is_timed_out",
]


def create_task_store(backend: Optional[str] = None) -> TaskStore:
    """Instantiate the configured task store backend."""

    backend = (backend or os.getenv("TASK_STORE_BACKEND") or "redis").strip().lower()

    if backend == "memory":
        return InMemoryTaskStore()

    if backend == "redis":
        from .redis_store import RedisTaskStore

        return RedisTaskStore(ttl_seconds=env_int("TASK_STORE_TTL_SECONDS", default=0))

    if backend == "postgres":
        from .postgres_store import PostgreSQLTaskStore

        return PostgreSQLTaskStore()

    raise ValueError(
        f"Unsupported TASK_STORE_BACKEND '{backend}'. "
        "Supported values: memory, redis or postgres"
    )
