from mint_orchestrator.services.collaborators import ProgressCallback
from mint_orchestrator.services.errors import StageError
from mint_orchestrator.services.workflows.pipeline import WorkflowStep, StepContext


class SynthesizeAssetStep(WorkflowStep):
    """Step: Render the artwork with the provider chosen for the task"""

    name = "asset synthesis"
    start_progress = 40
    end_progress = 60
    start_message = "Generating artwork"
    end_message = "Artwork generated"

    async def execute(self, context: StepContext, report: ProgressCallback) -> StepContext:
        if context.attributes is None:
            raise StageError("attributes are required in context for synthesis")

        synthesizer = self.collaborators.synthesizers.get(context.provider)
        if synthesizer is None:
            available = ", ".join(sorted(self.collaborators.synthesizers)) or "none"
            raise StageError(f"Unknown image provider '{context.provider}'. Available: {available}")

        context.asset = await synthesizer.synthesize(
            context.attributes.prompt,
            dict(context.options.get("provider_options") or {}),
            report,
        )
        return context
