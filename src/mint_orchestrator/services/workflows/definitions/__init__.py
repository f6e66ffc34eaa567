from .generate_artifact import generate_artifact

__all__ = ["generate_artifact"]
