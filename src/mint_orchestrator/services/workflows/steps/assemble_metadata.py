from mint_orchestrator.services.collaborators import ProgressCallback
from mint_orchestrator.services.errors import StageError
from mint_orchestrator.services.workflows.pipeline import WorkflowStep, StepContext


class AssembleMetadataStep(WorkflowStep):
    """Step: Build the ERC-721 metadata document and upload it"""

    name = "metadata assembly"
    start_progress = 85
    end_progress = 90
    start_message = "Uploading metadata"
    end_message = "Metadata uploaded"

    async def execute(self, context: StepContext, report: ProgressCallback) -> StepContext:
        if context.attributes is None or not context.image_uri:
            raise StageError("attributes and image_uri are required in context for metadata")

        attributes = context.attributes
        context.metadata = {
            "name": attributes.name,
            "description": attributes.description,
            "image": context.image_uri,
            "attributes": attributes.traits,
            "properties": {
                "rarity": attributes.rarity,
                "provider": context.asset.provider if context.asset else context.provider,
            },
        }
        context.token_uri = await self.collaborators.uploader.upload_json(
            context.metadata,
            f"{context.subject_id}.json",
        )
        return context
