"""
Exception types shared by the stores, the scanner, the pipeline and the routes.

Failures fall into four groups: per-task business failures (``StageError``),
retryable provider failures (``TransientStageError`` and anything
``is_transient`` recognises), lazily detected deadlines (surfaced as a
``TIMEOUT`` status, not an exception) and store outages
(``StoreUnavailableError``), which abort the whole invocation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration layer."""


class TaskNotFoundError(OrchestratorError, LookupError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTransitionError(OrchestratorError):
    """A status change was requested for a task that is already terminal."""

    def __init__(self, task_id: str, current: str, requested: str):
        super().__init__(
            f"Task {task_id} is {current}; cannot transition to {requested}"
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class StoreUnavailableError(OrchestratorError, ConnectionError):
    """The task store or process-state store could not be reached."""


class UpstreamError(OrchestratorError):
    """The upstream event source (chain RPC) returned an error or was unreachable."""


class EventParseError(OrchestratorError, ValueError):
    """A single upstream log entry could not be decoded."""

    def __init__(self, reason: str, raw: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw or {}


class StageError(OrchestratorError):
    """A pipeline stage rejected the task. Not retried."""


class TransientStageError(StageError):
    """A pipeline stage hit a retryable provider or network failure."""


class StageFailedError(OrchestratorError):
    """Raised by the pipeline once the task has been moved to FAILED."""

    def __init__(self, task_id: str, stage: str, cause: BaseException):
        super().__init__(f"{stage} failed: {cause}")
        self.task_id = task_id
        self.stage = stage
        self.cause = cause


class StageRetryableError(OrchestratorError):
    """Raised by the pipeline when a stage failed transiently; the task stays live."""

    def __init__(self, task_id: str, stage: str, cause: BaseException):
        super().__init__(f"{stage} failed transiently: {cause}")
        self.task_id = task_id
        self.stage = stage
        self.cause = cause


class TaskTerminatedError(OrchestratorError):
    """The task reached a terminal state while its pipeline was running."""

    def __init__(self, task_id: str, status: str):
        super().__init__(f"Task {task_id} is already {status}")
        self.task_id = task_id
        self.status = status


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` is worth retrying on a later invocation."""
    if isinstance(exc, TransientStageError):
        return True
    if isinstance(exc, StageError):
        return False
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False
