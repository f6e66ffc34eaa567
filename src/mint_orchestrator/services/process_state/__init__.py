"""Process state package entrypoint and backend factory."""

from __future__ import annotations

import os
from typing import Optional

from .base import PendingTaskRef, ProcessState, ProcessStateStore
from .memory_store import InMemoryProcessStateStore


__all__ = [
    "InMemoryProcessStateStore",
    "PendingTaskRef",
    "ProcessState",
    "ProcessStateStore",
    "create_process_state_store",
]


def create_process_state_store(backend: Optional[str] = None, key: Optional[str] = None) -> ProcessStateStore:
    """Instantiate the configured process-state backend."""

    backend = (backend or os.getenv("STATE_STORE_BACKEND") or "redis").strip().lower()
    key = key or os.getenv("PROCESS_STATE_KEY") or "cron"

    if backend == "memory":
        return InMemoryProcessStateStore()

    if backend == "redis":
        from .redis_store import RedisProcessStateStore

        return RedisProcessStateStore(key=key)

    if backend == "postgres":
        from .postgres_store import PostgreSQLProcessStateStore

        return PostgreSQLProcessStateStore(key=key)

    raise ValueError(
        f"Unsupported STATE_STORE_BACKEND '{backend}'. "
        "Supported values: memory, redis or postgres"
    )
