"""
Task store abstractions and shared types.

This module defines the task record, its lifecycle rules and the contract
that any task store backend must satisfy so that different persistence
layers (memory, Redis, Postgres) can be used interchangeably.

The lifecycle rules live in plain functions (``apply_update``,
``is_timed_out``) so every backend merges fields and detects deadlines the
same way; backends only decide how a record is read, written and indexed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from ..errors import InvalidTransitionError, TaskNotFoundError


class TaskStatus(str, Enum):
    """Enumeration of task lifecycle states."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})
LIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})

# Statuses only ever move to a higher rank.
_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
    TaskStatus.TIMEOUT: 2,
}

UPDATABLE_FIELDS = frozenset({
    "status",
    "progress",
    "message",
    "result",
    "error",
    "provider",
    "options",
    "timeout_at",
})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Ensure date values are always iso formatted"""
    return dt.isoformat() if dt else None


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept either a datetime or ISO8601 string (or None) and return a timezone-aware
    UTC datetime. Used to normalize timestamps coming from storage or API payloads."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        else:
            dt = dt.astimezone(timezone.utc)
        return dt
    raise ValueError("Datetime values must be datetime objects or ISO 8601 strings.")


def coerce_status(status: Union[TaskStatus, str]) -> TaskStatus:
    """Accept either the enum or its string form (any case)."""
    if isinstance(status, TaskStatus):
        return status
    return TaskStatus(str(status).strip().upper())


def new_task_id() -> str:
    return str(uuid4())


@dataclass
class Task:
    """One tracked unit of asynchronous work."""

    id: str
    subject_id: str
    provider: str
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    message: str = "Task created"
    options: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    timeout_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    estimated_completion_at: Optional[datetime] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation with ISO8601 timestamps."""
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "provider": self.provider,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "options": self.options,
            "result": self.result,
            "error": self.error,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "timeout_at": isoformat(self.timeout_at),
            "completed_at": isoformat(self.completed_at),
            "failed_at": isoformat(self.failed_at),
            "estimated_completion_at": isoformat(self.estimated_completion_at),
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            subject_id=str(data["subject_id"]),
            provider=data.get("provider") or "",
            status=coerce_status(data.get("status", TaskStatus.PENDING)),
            progress=int(data.get("progress") or 0),
            message=data.get("message") or "",
            options=dict(data.get("options") or {}),
            result=data.get("result"),
            error=data.get("error"),
            created_at=coerce_datetime(data.get("created_at")) or utc_now(),
            updated_at=coerce_datetime(data.get("updated_at")) or utc_now(),
            timeout_at=coerce_datetime(data.get("timeout_at")),
            completed_at=coerce_datetime(data.get("completed_at")),
            failed_at=coerce_datetime(data.get("failed_at")),
            estimated_completion_at=coerce_datetime(data.get("estimated_completion_at")),
            history=list(data.get("history") or []),
        )

    def view(self, minimal: bool = False) -> Dict[str, Any]:
        """Payload returned to polling clients."""
        if minimal:
            return {
                "task_id": self.id,
                "status": self.status.value,
                "progress": self.progress,
                "message": self.message,
                "result": self.result,
                "updated_at": isoformat(self.updated_at),
            }
        payload = self.to_dict()
        payload["task_id"] = payload.pop("id")
        return payload


@dataclass
class TaskQuery:
    """Filter criteria for ``TaskStore.list_tasks``."""

    status: Optional[TaskStatus] = None
    subject_id: Optional[str] = None
    provider: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    min_progress: Optional[int] = None
    limit: Optional[int] = None

    def matches(self, task: Task) -> bool:
        if self.status is not None and task.status != self.status:
            return False
        if self.subject_id is not None and task.subject_id != str(self.subject_id):
            return False
        if self.provider is not None and task.provider != self.provider:
            return False
        if self.created_after is not None and task.created_at < self.created_after:
            return False
        if self.created_before is not None and task.created_at > self.created_before:
            return False
        if self.min_progress is not None and task.progress < self.min_progress:
            return False
        return True


def is_timed_out(now: datetime, timeout_at: Optional[datetime], status: TaskStatus) -> bool:
    """True when a live task's deadline has passed."""
    if timeout_at is None or status.is_terminal:
        return False
    return now > timeout_at


def build_task(
    subject_id: Any,
    provider: str,
    options: Optional[Dict[str, Any]] = None,
    *,
    timeout_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Task:
    """Construct a fresh PENDING task record."""
    now = now or utc_now()
    return Task(
        id=new_task_id(),
        subject_id=str(subject_id),
        provider=provider,
        options=dict(options or {}),
        created_at=now,
        updated_at=now,
        timeout_at=now + timedelta(seconds=timeout_seconds) if timeout_seconds else None,
        history=[{
            "time": isoformat(now),
            "status": TaskStatus.PENDING.value,
            "message": "Task created",
            "progress": 0,
        }],
    )


def apply_update(task: Task, updates: Mapping[str, Any], now: Optional[datetime] = None) -> Task:
    """
    Merge ``updates`` into a copy of ``task`` following the lifecycle rules.

    - ``updated_at`` is always refreshed.
    - Progress inside (0, 100) with no explicit status promotes PENDING to IN_PROGRESS.
    - Progress never decreases on a live task, and is frozen once terminal.
    - Statuses only move forward; a terminal task cannot change status.
    """
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported task fields: {sorted(unknown)}")

    now = now or utc_now()
    updated = replace(task, options=dict(task.options), history=list(task.history))

    requested: Optional[TaskStatus] = None
    if updates.get("status") is not None:
        requested = coerce_status(updates["status"])
        if task.is_terminal and requested != task.status:
            raise InvalidTransitionError(task.id, task.status.value, requested.value)
        if _STATUS_RANK[requested] < _STATUS_RANK[task.status]:
            raise InvalidTransitionError(task.id, task.status.value, requested.value)

    if updates.get("progress") is not None and not task.is_terminal:
        progress = max(0, min(100, int(updates["progress"])))
        updated.progress = max(progress, task.progress)
        if requested is None and 0 < progress < 100 and task.status == TaskStatus.PENDING:
            requested = TaskStatus.IN_PROGRESS

    if requested is not None:
        updated.status = requested

    for key in ("message", "error", "provider"):
        if updates.get(key) is not None:
            setattr(updated, key, str(updates[key]))
    if "result" in updates:
        updated.result = updates["result"]
    if updates.get("options") is not None:
        updated.options = dict(updates["options"])
    if "timeout_at" in updates:
        updated.timeout_at = coerce_datetime(updates["timeout_at"])

    if requested == TaskStatus.COMPLETED and task.status != TaskStatus.COMPLETED:
        updated.completed_at = now
        updated.estimated_completion_at = None
    elif requested in (TaskStatus.FAILED, TaskStatus.TIMEOUT) and task.status != requested:
        updated.failed_at = now
        updated.estimated_completion_at = None

    if (
        not updated.is_terminal
        and updated.progress > task.progress
        and 0 < updated.progress < 100
    ):
        elapsed = (now - task.created_at).total_seconds()
        remaining = elapsed / updated.progress * (100 - updated.progress)
        updated.estimated_completion_at = now + timedelta(seconds=remaining)

    entry_message = None
    if updated.status != task.status:
        entry_message = updates.get("message") or f"Status changed to {updated.status.value}"
    elif updated.progress != task.progress:
        entry_message = updates.get("message") or f"Progress updated to {updated.progress}%"
    elif updated.message != task.message:
        entry_message = updated.message
    if entry_message is not None:
        updated.history.append({
            "time": isoformat(now),
            "status": updated.status.value,
            "message": entry_message,
            "progress": updated.progress,
        })

    updated.updated_at = now
    return updated


def timeout_updates(task: Task) -> Dict[str, Any]:
    """Fields written when a live task is found past its deadline."""
    return {
        "status": TaskStatus.TIMEOUT,
        "message": "Task timed out",
        "error": f"Deadline {isoformat(task.timeout_at)} exceeded",
    }


def describe_error(error: Union[BaseException, str, None]) -> str:
    if error is None:
        return "Task failed"
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
    return str(error)


class TaskStore(ABC):
    """Abstract interface for task persistence backends."""

    @abstractmethod
    async def create_task(
        self,
        subject_id: Any,
        provider: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Create a PENDING task, or return the id of the subject's live task."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        """Fetch a task record by ID without side effects."""

    @abstractmethod
    async def update_task(self, task_id: str, **updates) -> Task:
        """Merge fields into a task record. Raises TaskNotFoundError."""

    @abstractmethod
    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        """Return tasks matching ``query``, newest first."""

    @abstractmethod
    async def delete_task(self, task_id: str) -> None:
        """Delete a task record."""

    @abstractmethod
    async def close(self) -> None:
        """Release any underlying resources (connections, pools, etc.)."""

    async def get_task_status(self, task_id: str, now: Optional[datetime] = None) -> Task:
        """Return the task, first moving it to TIMEOUT if its deadline has passed."""
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if is_timed_out(now or utc_now(), task.timeout_at, task.status):
            try:
                task = await self.update_task(task_id, **timeout_updates(task))
            except InvalidTransitionError:
                # another writer finished the task first
                task = await self.get_task(task_id)
                if task is None:
                    raise TaskNotFoundError(task_id)
        return task

    async def complete_task(self, task_id: str, result: Optional[Dict[str, Any]] = None) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status == TaskStatus.COMPLETED:
            return task
        return await self.update_task(
            task_id,
            status=TaskStatus.COMPLETED,
            progress=100,
            result=result or {},
            message="Task completed successfully",
        )

    async def fail_task(self, task_id: str, error: Union[BaseException, str, None]) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status == TaskStatus.FAILED:
            return task
        message = str(error) if error is not None and str(error) else "Task failed"
        return await self.update_task(
            task_id,
            status=TaskStatus.FAILED,
            message=message,
            error=describe_error(error),
        )

    async def get_metrics(self) -> Dict[str, Any]:
        """Counts per status and the mean time from creation to completion."""
        tasks = await self.list_tasks(TaskQuery())
        counts = {status.value: 0 for status in TaskStatus}
        durations: List[float] = []
        for task in tasks:
            counts[task.status.value] += 1
            if task.status == TaskStatus.COMPLETED and task.completed_at:
                durations.append((task.completed_at - task.created_at).total_seconds())
        return {
            "total_tasks": len(tasks),
            "by_status": counts,
            "average_completion_seconds": round(sum(durations) / len(durations)) if durations else 0,
        }

    async def cleanup_tasks(self, max_age: timedelta = timedelta(hours=24)) -> int:
        """Delete terminal tasks that have not been updated within ``max_age``."""
        cutoff = utc_now() - max_age
        removed = 0
        for task in await self.list_tasks(TaskQuery()):
            if task.is_terminal and task.updated_at < cutoff:
                await self.delete_task(task.id)
                removed += 1
        return removed
