"""
Scheduled entry point: one scan-and-process cycle per invocation.

Process state is loaded first and written back last. If either store is
unreachable the cycle aborts before the write, so the next invocation
re-derives its scan range from the last cursor that was actually persisted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .context import OrchestratorContext
from .processor import BatchProcessor, RetryPolicy
from .scanner import EventScanner
from .task_store.base import isoformat, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    new_events_found: int
    new_tasks_created: int
    tasks_processed: int
    tasks_failed: int
    pending_tasks_remaining: int
    last_processed_block: int
    blocks_scanned: int
    total_processed_subjects: int
    execution_time_ms: int
    timestamp: str
    scan_error: Optional[str] = None
    results: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScheduledCycle:

    def __init__(self, context: OrchestratorContext, clock: Callable[[], float] = time.monotonic):
        self.context = context
        self.clock = clock
        settings = context.settings
        self.scanner = EventScanner(
            context.task_store,
            context.event_source,
            default_provider=settings.default_provider,
            initial_lookback_blocks=settings.initial_lookback_blocks,
            max_block_range=settings.max_block_range,
            task_timeout_seconds=settings.task_timeout_seconds,
        )
        self.processor = BatchProcessor(
            context.task_store,
            context.executor,
            max_tasks=settings.max_tasks_per_run,
            max_seconds=settings.max_execution_seconds,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_task_attempts,
                backoff_seconds=settings.retry_backoff_seconds,
            ),
            clock=clock,
        )

    async def run(self) -> CycleSummary:
        started = self.clock()
        state = await self.context.state_store.load()

        scan = await self.scanner.scan(state)
        batch = await self.processor.process(state, started)

        await self.context.state_store.save(state)

        summary = CycleSummary(
            new_events_found=scan.events_found,
            new_tasks_created=scan.tasks_created,
            tasks_processed=batch.tasks_processed,
            tasks_failed=batch.tasks_failed,
            pending_tasks_remaining=len(state.pending_tasks),
            last_processed_block=state.last_processed_block,
            blocks_scanned=scan.blocks_scanned,
            total_processed_subjects=len(state.processed_subjects),
            execution_time_ms=int((self.clock() - started) * 1000),
            timestamp=isoformat(utc_now()),
            scan_error=scan.error,
            results=scan.messages + batch.messages,
        )
        logger.info(
            "Cycle finished: %d events, %d new tasks, %d processed, %d failed, %d pending, cursor at %d (%dms)",
            summary.new_events_found,
            summary.new_tasks_created,
            summary.tasks_processed,
            summary.tasks_failed,
            summary.pending_tasks_remaining,
            summary.last_processed_block,
            summary.execution_time_ms,
        )
        return summary


async def run_cycle(context: OrchestratorContext) -> CycleSummary:
    return await ScheduledCycle(context).run()
