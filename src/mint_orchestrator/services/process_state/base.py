"""
Process state: the scanner cursor, the set of finished subjects and the queue
of tasks still waiting for a processing pass.

The document is loaded whole at the start of an invocation, mutated in memory
and written back whole at the end. Concurrent invocations are last-writer-wins.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Set

from ..task_store.base import coerce_datetime, isoformat, utc_now


@dataclass
class PendingTaskRef:
    """Lightweight pointer from the queue to a task in the task store."""

    subject_id: str
    task_id: str
    created_at: datetime = field(default_factory=utc_now)
    params: Dict[str, Any] = field(default_factory=dict)
    force: bool = False
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or now >= self.next_attempt_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "task_id": self.task_id,
            "created_at": isoformat(self.created_at),
            "params": self.params,
            "force": self.force,
            "attempts": self.attempts,
            "next_attempt_at": isoformat(self.next_attempt_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PendingTaskRef":
        return cls(
            subject_id=str(data["subject_id"]),
            task_id=data["task_id"],
            created_at=coerce_datetime(data.get("created_at")) or utc_now(),
            params=dict(data.get("params") or {}),
            force=bool(data.get("force", False)),
            attempts=int(data.get("attempts") or 0),
            next_attempt_at=coerce_datetime(data.get("next_attempt_at")),
            last_error=data.get("last_error"),
        )


@dataclass
class ProcessState:
    last_processed_block: int = 0
    processed_subjects: Set[str] = field(default_factory=set)
    pending_tasks: List[PendingTaskRef] = field(default_factory=list)

    def has_pending(self, task_id: str) -> bool:
        return any(ref.task_id == task_id for ref in self.pending_tasks)

    def enqueue(self, ref: PendingTaskRef) -> bool:
        """Append ``ref`` unless its task is already queued. Returns True when appended."""
        if self.has_pending(ref.task_id):
            return False
        self.pending_tasks.append(ref)
        return True

    def remove(self, task_id: str) -> None:
        self.pending_tasks = [ref for ref in self.pending_tasks if ref.task_id != task_id]

    def mark_processed(self, subject_id: str) -> None:
        self.processed_subjects.add(str(subject_id))

    def advance_cursor(self, block: int) -> None:
        """Move the cursor forward; it never moves backwards here."""
        self.last_processed_block = max(self.last_processed_block, int(block))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_processed_block": self.last_processed_block,
            "processed_subjects": sorted(self.processed_subjects),
            "pending_tasks": [ref.to_dict() for ref in self.pending_tasks],
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ProcessState":
        data = data or {}
        return cls(
            last_processed_block=int(data.get("last_processed_block") or 0),
            processed_subjects={str(subject) for subject in data.get("processed_subjects") or []},
            pending_tasks=[PendingTaskRef.from_dict(item) for item in data.get("pending_tasks") or []],
        )


class ProcessStateStore(ABC):
    """Persists the single process-state document."""

    @abstractmethod
    async def load(self) -> ProcessState:
        """Return the stored state, or a fresh one when nothing has been saved yet."""

    @abstractmethod
    async def save(self, state: ProcessState) -> None:
        """Overwrite the stored document with ``state``."""

    @abstractmethod
    async def close(self) -> None:
        """Release any underlying resources."""

    async def reset_cursor(self, block: int) -> ProcessState:
        """Administrative override: set the cursor to ``block``, even backwards."""
        if block < 0:
            raise ValueError("Block number must be non-negative")
        state = await self.load()
        state.last_processed_block = block
        await self.save(state)
        return state
