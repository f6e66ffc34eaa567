from .openai_images import OpenAIImageSynthesizer
from .pinata import PinataUploader
from .traits import SeededAttributeGenerator

__all__ = ["OpenAIImageSynthesizer", "PinataUploader", "SeededAttributeGenerator"]
