from .pipeline import WorkflowPipeline, StepContext, WorkflowStep
from .steps import (
    AssembleMetadataStep,
    DeriveAttributesStep,
    RegisterTokenStep,
    SynthesizeAssetStep,
    UploadAssetStep,
)

__all__ = [
    "AssembleMetadataStep",
    "DeriveAttributesStep",
    "RegisterTokenStep",
    "StepContext",
    "SynthesizeAssetStep",
    "UploadAssetStep",
    "WorkflowPipeline",
    "WorkflowStep",
]
