from mint_orchestrator.services.collaborators import ProgressCallback
from mint_orchestrator.services.errors import StageError
from mint_orchestrator.services.workflows.pipeline import WorkflowStep, StepContext


class RegisterTokenStep(WorkflowStep):
    """Step: Write the final token URI on-chain. The task only completes once this succeeds."""

    name = "registration"
    start_progress = 95
    start_message = "Setting token URI on blockchain"

    async def execute(self, context: StepContext, report: ProgressCallback) -> StepContext:
        if not context.token_uri:
            raise StageError("token_uri is required in context for registration")

        context.receipt = await self.collaborators.registrar.register(
            context.subject_id,
            context.token_uri,
        )
        return context
