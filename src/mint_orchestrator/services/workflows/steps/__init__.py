from .derive_attributes import DeriveAttributesStep
from .synthesize_asset import SynthesizeAssetStep
from .upload_asset import UploadAssetStep
from .assemble_metadata import AssembleMetadataStep
from .register_token import RegisterTokenStep

__all__ = [
    "DeriveAttributesStep",
    "SynthesizeAssetStep",
    "UploadAssetStep",
    "AssembleMetadataStep",
    "RegisterTokenStep",
]
