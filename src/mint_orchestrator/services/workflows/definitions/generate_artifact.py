from mint_orchestrator.services.collaborators import Collaborators
from mint_orchestrator.services.task_store import TaskStore
from mint_orchestrator.services.workflows import (
    AssembleMetadataStep,
    DeriveAttributesStep,
    RegisterTokenStep,
    SynthesizeAssetStep,
    UploadAssetStep,
    WorkflowPipeline,
)


def generate_artifact(task_store: TaskStore, collaborators: Collaborators) -> WorkflowPipeline:
    """
    Derive traits, render the artwork, upload image and metadata to content-addressed
    storage, then register the metadata locator on-chain.
    """
    steps = [
        DeriveAttributesStep(collaborators),
        SynthesizeAssetStep(collaborators),
        UploadAssetStep(collaborators),
        AssembleMetadataStep(collaborators),
        RegisterTokenStep(collaborators),
    ]

    return WorkflowPipeline(steps=steps, task_store=task_store)
