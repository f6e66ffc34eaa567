"""Batch processor: bounded progress on the pending queue every invocation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .errors import (
    InvalidTransitionError,
    StageFailedError,
    StageRetryableError,
    TaskNotFoundError,
    TaskTerminatedError,
)
from .process_state import PendingTaskRef, ProcessState
from .task_store import TaskStatus, TaskStore
from .task_store.base import utc_now
from .workflows.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """How often, and how far apart, transient failures are retried."""

    max_attempts: int = 3
    backoff_seconds: float = 60.0

    def next_attempt_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds * (2 ** max(0, attempts - 1)))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass
class BatchResult:
    tasks_processed: int = 0
    tasks_failed: int = 0
    tasks_retried: int = 0
    tasks_skipped: int = 0
    stale_removed: int = 0
    stopped_early: bool = False
    messages: List[str] = field(default_factory=list)


class BatchProcessor:
    """
    Drains ``state.pending_tasks`` in order, advancing at most ``max_tasks`` tasks
    and stopping once ``max_seconds`` have elapsed since ``started``.

    The time budget is checked between tasks only; a slow stage can overrun it.
    """

    def __init__(
        self,
        task_store: TaskStore,
        executor: WorkflowExecutor,
        *,
        max_tasks: int = 3,
        max_seconds: float = 25.0,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ):
        self.task_store = task_store
        self.executor = executor
        self.max_tasks = max_tasks
        self.max_seconds = max_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.now = now

    def _out_of_time(self, started: float) -> bool:
        return self.clock() - started >= self.max_seconds

    async def process(self, state: ProcessState, started: Optional[float] = None) -> BatchResult:
        started = self.clock() if started is None else started
        result = BatchResult()
        advanced = 0
        index = 0

        while index < len(state.pending_tasks) and advanced < self.max_tasks:
            if self._out_of_time(started):
                result.stopped_early = True
                result.messages.append("Execution time limit reached, stopping processing")
                logger.info("Time budget of %.1fs reached; %d tasks left queued", self.max_seconds, len(state.pending_tasks))
                break

            ref = state.pending_tasks[index]
            if not ref.is_due(self.now()):
                index += 1
                continue

            try:
                task = await self.task_store.get_task_status(ref.task_id)
            except TaskNotFoundError:
                logger.warning("Dropping queue entry for unknown task %s", ref.task_id)
                state.remove(ref.task_id)
                result.stale_removed += 1
                continue

            if task.is_terminal:
                if task.status == TaskStatus.COMPLETED:
                    state.mark_processed(ref.subject_id)
                state.remove(ref.task_id)
                result.stale_removed += 1
                result.messages.append(f"Removed {task.status.value.lower()} task {ref.task_id} for token #{ref.subject_id}")
                continue

            if ref.subject_id in state.processed_subjects and not ref.force:
                logger.info("Token #%s already processed, completing task %s as skipped", ref.subject_id, ref.task_id)
                try:
                    await self.task_store.complete_task(ref.task_id, {"skipped": True, "subject_id": ref.subject_id})
                except InvalidTransitionError as exc:
                    logger.info("Task %s was already %s", ref.task_id, exc.current)
                state.remove(ref.task_id)
                result.tasks_skipped += 1
                continue

            advanced += 1
            if await self._advance(ref, task, state, result):
                continue
            index += 1

        return result

    async def _advance(self, ref: PendingTaskRef, task, state: ProcessState, result: BatchResult) -> bool:
        """Run one task's pipeline. Returns True when the entry left the queue."""
        logger.info("Processing task %s for token #%s", ref.task_id, ref.subject_id)
        try:
            await self.executor.run(task, ref)
        except StageFailedError as exc:
            state.remove(ref.task_id)
            result.tasks_failed += 1
            result.messages.append(f"Failed task {ref.task_id} for token #{ref.subject_id}: {exc}")
            return True
        except (TaskTerminatedError, TaskNotFoundError, InvalidTransitionError) as exc:
            logger.warning("Task %s ended while running: %s", ref.task_id, exc)
            state.remove(ref.task_id)
            result.stale_removed += 1
            return True
        except StageRetryableError as exc:
            return await self._schedule_retry(ref, exc, state, result)

        state.remove(ref.task_id)
        state.mark_processed(ref.subject_id)
        result.tasks_processed += 1
        result.messages.append(f"Completed task {ref.task_id} for token #{ref.subject_id}")
        return True

    async def _schedule_retry(
        self,
        ref: PendingTaskRef,
        exc: StageRetryableError,
        state: ProcessState,
        result: BatchResult,
    ) -> bool:
        ref.attempts += 1
        ref.last_error = str(exc)
        if self.retry_policy.exhausted(ref.attempts):
            logger.error("Task %s exhausted %d attempts; failing it", ref.task_id, ref.attempts)
            try:
                await self.task_store.fail_task(
                    ref.task_id,
                    f"Retry budget exhausted after {ref.attempts} attempts: {exc}",
                )
            except InvalidTransitionError as terminal:
                logger.info("Task %s was already %s", ref.task_id, terminal.current)
            state.remove(ref.task_id)
            result.tasks_failed += 1
            result.messages.append(f"Gave up on task {ref.task_id} for token #{ref.subject_id} after {ref.attempts} attempts")
            return True

        ref.next_attempt_at = self.retry_policy.next_attempt_at(ref.attempts, self.now())
        logger.warning(
            "Task %s attempt %d failed; retrying after %s",
            ref.task_id,
            ref.attempts,
            ref.next_attempt_at.isoformat(),
        )
        result.tasks_retried += 1
        result.messages.append(f"Will retry task {ref.task_id} for token #{ref.subject_id}: {exc}")
        return False
