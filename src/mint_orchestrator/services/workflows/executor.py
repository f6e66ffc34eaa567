import logging
from typing import Callable, Dict, Optional

from mint_orchestrator.services.collaborators import Collaborators
from mint_orchestrator.services.errors import StageFailedError
from mint_orchestrator.services.process_state import PendingTaskRef
from mint_orchestrator.services.task_store import Task, TaskStore
from mint_orchestrator.services.workflows.definitions import generate_artifact
from mint_orchestrator.services.workflows.pipeline import StepContext, WorkflowPipeline

logger = logging.getLogger(__name__)

WorkflowFactory = Callable[[TaskStore, Collaborators], WorkflowPipeline]

DEFAULT_WORKFLOW = "generate_artifact"


class WorkflowExecutor:
    """Registry-based executor that runs a task's workflow to completion"""

    def __init__(self, task_store: TaskStore, collaborators: Collaborators):
        self.task_store = task_store
        self.collaborators = collaborators
        # Registry of available workflows - maps name to definition function
        self.workflows: Dict[str, WorkflowFactory] = {
            DEFAULT_WORKFLOW: generate_artifact,
        }

    def build_context(self, task: Task, ref: Optional[PendingTaskRef] = None) -> StepContext:
        """Merge the task's stored options with the queue entry's parameters."""
        parameters = dict(task.options)
        if ref is not None:
            parameters.update(ref.params)
        return StepContext(
            task_id=task.id,
            subject_id=task.subject_id,
            provider=task.provider,
            options=dict(task.options),
            parameters=parameters,
        )

    async def run(self, task: Task, ref: Optional[PendingTaskRef] = None) -> Task:
        """
        Run the task's workflow and await it fully.

        Args:
            task: The live task to advance.
            ref: The queue entry the task came from, if any.

        Returns:
            The completed task record. Failures surface as the pipeline's exceptions.
        """
        workflow_type = task.options.get("workflow", DEFAULT_WORKFLOW)
        if workflow_type not in self.workflows:
            error = ValueError(f"Unknown workflow type: {workflow_type}. Available: {list(self.workflows.keys())}")
            await self.task_store.fail_task(task.id, error)
            raise StageFailedError(task.id, "workflow selection", error)

        pipeline = self.workflows[workflow_type](self.task_store, self.collaborators)
        logger.info("Running %s for task %s (subject %s)", workflow_type, task.id, task.subject_id)
        return await pipeline.execute(self.build_context(task, ref))
