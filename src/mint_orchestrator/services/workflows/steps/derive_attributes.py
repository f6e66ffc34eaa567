from mint_orchestrator.services.collaborators import ProgressCallback
from mint_orchestrator.services.workflows.pipeline import WorkflowStep, StepContext


class DeriveAttributesStep(WorkflowStep):
    """Step: Derive the subject's traits and the prompt used for synthesis"""

    name = "attribute derivation"
    start_progress = 10
    end_progress = 20
    start_message = "Generating traits"
    end_message = "Traits generated"

    async def execute(self, context: StepContext, report: ProgressCallback) -> StepContext:
        context.attributes = await self.collaborators.attributes.generate(
            context.subject_id,
            context.parameters,
        )
        return context
