import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mint_orchestrator.services.collaborators import (
    Attributes,
    Collaborators,
    ProgressCallback,
    RegistrationReceipt,
    SynthesizedAsset,
)
from mint_orchestrator.services.errors import (
    InvalidTransitionError,
    StageFailedError,
    StageRetryableError,
    StoreUnavailableError,
    TaskNotFoundError,
    TaskTerminatedError,
    is_transient,
)
from mint_orchestrator.services.task_store import Task, TaskStore
from mint_orchestrator.services.task_store.base import describe_error

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Shared context passed between workflow steps"""
    task_id: str
    subject_id: str
    provider: str
    options: Dict[str, Any] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    attributes: Optional[Attributes] = None
    asset: Optional[SynthesizedAsset] = None
    image_uri: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    token_uri: Optional[str] = None
    receipt: Optional[RegistrationReceipt] = None

    def result(self) -> Dict[str, Any]:
        """Payload stored on the task when it completes."""
        return {
            "token_uri": self.token_uri,
            "image_uri": self.image_uri,
            "subject_id": self.subject_id,
            "provider": self.provider,
            "transaction_hash": self.receipt.transaction_hash if self.receipt else None,
            "attributes": self.attributes.traits if self.attributes else [],
        }


class WorkflowStep(ABC):
    """Base class for workflow steps.

    Each step owns a progress window: the pipeline records ``start_progress``
    before calling it and ``end_progress`` (when set) after it returns.
    """

    name: str = "step"
    start_progress: int = 0
    end_progress: Optional[int] = None
    start_message: str = ""
    end_message: str = ""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    @abstractmethod
    async def execute(self, context: StepContext, report: ProgressCallback) -> StepContext:
        """Execute the step and return updated context"""
        pass


class WorkflowPipeline:
    """Orchestrates execution of workflow steps.

    Steps run strictly in sequence. Any exception a step raises is attributed to
    that step: retryable ones leave the task live and raise StageRetryableError,
    everything else fails the task and raises StageFailedError. Store outages and
    tasks that went terminal underneath the pipeline propagate unchanged.
    """

    def __init__(self, steps: List[WorkflowStep], task_store: TaskStore):
        self.steps = steps
        self.task_store = task_store

    async def execute(self, context: StepContext) -> Task:
        """Execute all steps in sequence and complete the task."""
        for step in self.steps:
            await self._checkpoint(context.task_id, step.start_progress, step.start_message or f"Running {step.name}")
            try:
                context = await step.execute(context, self._reporter(context.task_id, step))
            except (StoreUnavailableError, TaskTerminatedError, TaskNotFoundError):
                raise
            except Exception as exc:
                await self._handle_failure(context, step, exc)
            if step.end_progress is not None:
                await self._checkpoint(context.task_id, step.end_progress, step.end_message or f"{step.name} finished")

        try:
            task = await self.task_store.complete_task(context.task_id, context.result())
        except InvalidTransitionError as exc:
            raise TaskTerminatedError(context.task_id, exc.current) from exc
        logger.info("Task %s completed for subject %s", context.task_id, context.subject_id)
        return task

    async def _handle_failure(self, context: StepContext, step: WorkflowStep, exc: Exception) -> None:
        if is_transient(exc):
            logger.warning("Task %s: %s failed transiently: %s", context.task_id, step.name, exc)
            await self.task_store.update_task(
                context.task_id,
                message=f"{step.name} failed, will retry: {str(exc)[:200]}",
            )
            raise StageRetryableError(context.task_id, step.name, exc) from exc

        logger.error("Task %s: %s failed: %s", context.task_id, step.name, exc)
        try:
            await self.task_store.fail_task(context.task_id, f"{step.name} failed: {describe_error(exc)}")
        except InvalidTransitionError as terminal:
            raise TaskTerminatedError(context.task_id, terminal.current) from exc
        raise StageFailedError(context.task_id, step.name, exc) from exc

    async def _checkpoint(self, task_id: str, progress: int, message: str) -> Task:
        """Persist progress, stopping if the task has gone terminal (e.g. timed out)."""
        current = await self.task_store.get_task_status(task_id)
        if current.is_terminal:
            raise TaskTerminatedError(task_id, current.status.value)
        try:
            return await self.task_store.update_task(task_id, progress=progress, message=message)
        except InvalidTransitionError as exc:
            raise TaskTerminatedError(task_id, exc.current) from exc

    def _reporter(self, task_id: str, step: WorkflowStep) -> ProgressCallback:
        """Progress callback handed to a step, clamped to the step's window."""
        upper = step.end_progress if step.end_progress is not None else 99

        async def report(progress: int, message: str) -> None:
            bounded = max(step.start_progress, min(upper, int(progress)))
            await self._checkpoint(task_id, bounded, message)

        return report
