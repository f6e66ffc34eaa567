"""In-process TaskStore implementation for tests and single-process local runs."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from ..errors import TaskNotFoundError
from .base import (
    Task,
    TaskQuery,
    TaskStore,
    apply_update,
    build_task,
    is_timed_out,
    timeout_updates,
    utc_now,
)


class InMemoryTaskStore(TaskStore):
    """
    Dictionary-backed task store.

    - Records are kept as serialized dicts so callers never share mutable state with the store.
    - A single asyncio lock makes create_task's check-then-insert atomic within the process.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._live_by_subject: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_task(
        self,
        subject_id: Any,
        provider: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        subject = str(subject_id)
        async with self._lock:
            now = utc_now()
            live_id = self._live_by_subject.get(subject)
            if live_id and live_id in self._records:
                existing = Task.from_dict(self._records[live_id])
                if is_timed_out(now, existing.timeout_at, existing.status):
                    expired = apply_update(existing, timeout_updates(existing), now)
                    self._records[live_id] = expired.to_dict()
                elif not existing.is_terminal:
                    return existing.id

            task = build_task(subject, provider, options, timeout_seconds=timeout_seconds, now=now)
            self._records[task.id] = task.to_dict()
            self._live_by_subject[subject] = task.id
            return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        record = self._records.get(task_id)
        return Task.from_dict(record) if record else None

    async def update_task(self, task_id: str, **updates) -> Task:
        async with self._lock:
            record = self._records.get(task_id)
            if record is None:
                raise TaskNotFoundError(task_id)
            task = apply_update(Task.from_dict(record), updates)
            self._records[task_id] = task.to_dict()
            return task

    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        query = query or TaskQuery()
        tasks = [Task.from_dict(record) for record in self._records.values()]
        matched = sorted(
            (task for task in tasks if query.matches(task)),
            key=lambda task: task.created_at,
            reverse=True,
        )
        return matched[: query.limit] if query.limit else matched

    async def delete_task(self, task_id: str) -> None:
        async with self._lock:
            record = self._records.pop(task_id, None)
            if record and self._live_by_subject.get(str(record["subject_id"])) == task_id:
                del self._live_by_subject[str(record["subject_id"])]

    async def close(self) -> None:
        return None
