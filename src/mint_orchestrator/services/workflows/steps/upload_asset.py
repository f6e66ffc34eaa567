from mint_orchestrator.services.collaborators import ProgressCallback
from mint_orchestrator.services.errors import StageError
from mint_orchestrator.services.workflows.pipeline import WorkflowStep, StepContext


class UploadAssetStep(WorkflowStep):
    """Step: Upload the artwork to content-addressed storage"""

    name = "asset upload"
    start_progress = 70
    end_progress = 80
    start_message = "Uploading artwork"
    end_message = "Artwork uploaded"

    async def execute(self, context: StepContext, report: ProgressCallback) -> StepContext:
        if context.asset is None:
            raise StageError("a synthesized asset is required in context for upload")

        extension = context.asset.content_type.rsplit("/", 1)[-1] or "bin"
        context.image_uri = await self.collaborators.uploader.upload_file(
            context.asset.content,
            f"{context.subject_id}.{extension}",
            context.asset.content_type,
        )
        return context
