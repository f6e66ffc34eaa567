import os
import warnings
from pathlib import Path

from dotenv import load_dotenv


def load_local_env():
    if os.getenv("DEPLOYMENT_ENV"):
        return

    dotenv_path = Path(__file__).resolve().parents[3] / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path, override=False)
    else:
        warnings.warn(
            f".env file not found at {dotenv_path}. "
            "Environment variables must be set via the system environment or the deployment runtime.",
            UserWarning
        )


def env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back to ``default`` when unset."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer.") from exc


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number.") from exc


def require_env(name: str, description: str) -> str:
    """
    Confirm that a required environment variable is available and
    return an informative message if it isn't.
    """
    value = os.getenv(name)
    if not value:
        raise ValueError(f"{name} must be set ({description}).")
    return value

