"""
Runtime settings and the explicitly constructed context object.

Nothing in the orchestrator reaches for a module-level client: the scanner,
the batch processor, the scheduled cycle and the HTTP routes all receive an
``OrchestratorContext`` built once per process (or assembled by tests).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from ..utils import env_float, env_int
from .client import ChainClient, RelayRegistrar
from .collaborators import Collaborators
from .events import EventSource
from .process_state import ProcessStateStore, create_process_state_store
from .providers import OpenAIImageSynthesizer, PinataUploader, SeededAttributeGenerator
from .task_store import TaskStore, create_task_store
from .workflows.executor import WorkflowExecutor


@dataclass
class OrchestratorSettings:
    """Tunables for one scan-and-process invocation."""

    max_tasks_per_run: int = 3
    max_execution_seconds: float = 25.0
    max_task_attempts: int = 3
    retry_backoff_seconds: float = 60.0
    initial_lookback_blocks: int = 100
    max_block_range: int = 2000
    task_timeout_seconds: Optional[float] = None
    manual_task_timeout_seconds: Optional[float] = 300.0
    default_provider: str = "dall-e"

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        task_timeout = env_float("TASK_TIMEOUT_SECONDS", 0)
        manual_timeout = env_float("MANUAL_TASK_TIMEOUT_SECONDS", 300)
        settings = cls(
            max_tasks_per_run=env_int("MAX_TASKS_PER_RUN", 3),
            max_execution_seconds=env_float("MAX_EXECUTION_SECONDS", 25.0),
            max_task_attempts=env_int("MAX_TASK_ATTEMPTS", 3),
            retry_backoff_seconds=env_float("RETRY_BACKOFF_SECONDS", 60.0),
            initial_lookback_blocks=env_int("INITIAL_LOOKBACK_BLOCKS", 100),
            max_block_range=env_int("MAX_BLOCK_RANGE", 2000),
            task_timeout_seconds=task_timeout if task_timeout > 0 else None,
            manual_task_timeout_seconds=manual_timeout if manual_timeout > 0 else None,
            default_provider=os.getenv("IMAGE_PROVIDER", "dall-e"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.max_tasks_per_run < 1:
            raise ValueError("MAX_TASKS_PER_RUN must be at least 1.")
        if self.max_execution_seconds <= 0:
            raise ValueError("MAX_EXECUTION_SECONDS must be positive.")
        if self.max_task_attempts < 1:
            raise ValueError("MAX_TASK_ATTEMPTS must be at least 1.")
        if self.max_block_range < 1:
            raise ValueError("MAX_BLOCK_RANGE must be at least 1.")


@dataclass
class OrchestratorContext:
    """Everything one invocation needs, passed explicitly."""

    task_store: TaskStore
    state_store: ProcessStateStore
    event_source: EventSource
    executor: WorkflowExecutor
    settings: OrchestratorSettings

    async def close(self) -> None:
        await self.task_store.close()
        await self.state_store.close()
        await self.event_source.close()
        await self.executor.collaborators.close()


def build_collaborators() -> Collaborators:
    synthesizer = OpenAIImageSynthesizer()
    return Collaborators(
        attributes=SeededAttributeGenerator(),
        synthesizers={synthesizer.name: synthesizer},
        uploader=PinataUploader(),
        registrar=RelayRegistrar(),
    )


def build_context(settings: Optional[OrchestratorSettings] = None) -> OrchestratorContext:
    """Build the production context from environment configuration."""
    settings = settings or OrchestratorSettings.from_env()
    task_store = create_task_store()
    return OrchestratorContext(
        task_store=task_store,
        state_store=create_process_state_store(),
        event_source=ChainClient(),
        executor=WorkflowExecutor(task_store, build_collaborators()),
        settings=settings,
    )
