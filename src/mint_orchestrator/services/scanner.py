"""Event scanner: turns new upstream events into queued tasks, exactly once each."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from .errors import UpstreamError
from .events import EventSource, MintRequested, UnparseableEvent
from .process_state import PendingTaskRef, ProcessState
from .task_store import TaskStore

logger = logging.getLogger(__name__)

# Failures of the event source only cost this invocation its scan.
SCAN_ERRORS = (UpstreamError, httpx.HTTPError, ValueError)


@dataclass
class ScanResult:
    from_block: int = 0
    to_block: int = 0
    events_found: int = 0
    tasks_created: int = 0
    subjects_skipped: int = 0
    parse_failures: int = 0
    error: Optional[str] = None
    messages: List[str] = field(default_factory=list)

    @property
    def blocks_scanned(self) -> int:
        return max(0, self.to_block - self.from_block + 1) if self.to_block else 0


class EventScanner:
    """
    Reads events in ``(last_processed_block, head]``, creates (or reuses) a task per
    subject and appends it to the pending queue, then moves the cursor to the end
    of the range it covered, even when no events were found.
    """

    def __init__(
        self,
        task_store: TaskStore,
        event_source: EventSource,
        *,
        default_provider: str = "dall-e",
        initial_lookback_blocks: int = 100,
        max_block_range: int = 2000,
        task_timeout_seconds: Optional[float] = None,
    ):
        self.task_store = task_store
        self.event_source = event_source
        self.default_provider = default_provider
        self.initial_lookback_blocks = initial_lookback_blocks
        self.max_block_range = max_block_range
        self.task_timeout_seconds = task_timeout_seconds

    async def scan(self, state: ProcessState) -> ScanResult:
        result = ScanResult()
        try:
            head = await self.event_source.get_head()
        except SCAN_ERRORS as exc:
            logger.error("Could not read head block: %s", exc)
            result.error = f"head lookup failed: {exc}"
            return result

        last = state.last_processed_block or max(0, head - self.initial_lookback_blocks)
        if last >= head:
            state.advance_cursor(last)
            return result

        result.from_block = last + 1
        logger.info("Scanning blocks %d to %d for mint requests", last + 1, head)

        events = []
        scanned_to = last
        for window_start in range(last + 1, head + 1, self.max_block_range):
            window_end = min(window_start + self.max_block_range - 1, head)
            try:
                events.extend(await self.event_source.get_events(window_start, window_end))
            except SCAN_ERRORS as exc:
                logger.error("Log query for blocks %d-%d failed: %s", window_start, window_end, exc)
                result.error = f"log query {window_start}-{window_end} failed: {exc}"
                break
            scanned_to = window_end

        result.to_block = scanned_to
        result.events_found = len(events)

        for event in events:
            if isinstance(event, UnparseableEvent):
                logger.warning("Skipping unparseable event in block %d: %s", event.block_number, event.reason)
                result.parse_failures += 1
                continue
            await self._queue(event, state, result)

        if scanned_to > last:
            state.advance_cursor(scanned_to)
        return result

    async def _queue(self, event: MintRequested, state: ProcessState, result: ScanResult) -> None:
        subject = event.subject_id
        if subject in state.processed_subjects and not event.force:
            logger.info("Token #%s already processed, skipping", subject)
            result.subjects_skipped += 1
            return

        params = {
            **event.parameters,
            "requester": event.requester,
            "block_number": event.block_number,
            "transaction_hash": event.transaction_hash,
        }
        provider = event.parameters.get("provider") or self.default_provider
        task_id = await self.task_store.create_task(
            subject,
            provider,
            {**params, "created_from": "scan"},
            timeout_seconds=self.task_timeout_seconds,
        )

        if state.enqueue(PendingTaskRef(subject_id=subject, task_id=task_id, params=params, force=event.force)):
            result.tasks_created += 1
            result.messages.append(f"Queued task {task_id} for token #{subject}")
            logger.info("Queued task %s for token #%s requested by %s", task_id, subject, event.requester)
