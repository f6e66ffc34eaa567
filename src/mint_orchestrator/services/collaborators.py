"""
Contracts for the external collaborators invoked by the generation pipeline.

Each stage talks to exactly one of these. Results are small typed records so
the orchestrator never passes provider payloads around untyped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional


ProgressCallback = Callable[[int, str], Awaitable[None]]


@dataclass
class Attributes:
    name: str
    description: str
    traits: List[Dict[str, Any]] = field(default_factory=list)
    rarity: Dict[str, Any] = field(default_factory=dict)
    prompt: str = ""

    def trait(self, trait_type: str, default: Any = None) -> Any:
        for item in self.traits:
            if item.get("trait_type") == trait_type:
                return item.get("value")
        return default


@dataclass
class SynthesizedAsset:
    content: bytes
    content_type: str = "image/png"
    provider: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RegistrationReceipt:
    transaction_hash: str
    confirmation: Dict[str, Any] = field(default_factory=dict)


class AttributeGenerator(ABC):
    @abstractmethod
    async def generate(self, subject_id: str, parameters: Dict[str, Any]) -> Attributes:
        """Derive the traits of ``subject_id``."""


class ImageSynthesizer(ABC):
    """One synthesis backend, selected by the task's ``provider``."""

    name: str = ""

    @abstractmethod
    async def synthesize(
        self,
        prompt: str,
        options: Dict[str, Any],
        progress: Optional[ProgressCallback] = None,
    ) -> SynthesizedAsset:
        """Render ``prompt`` into image bytes."""

    async def close(self) -> None:
        return None


class AssetUploader(ABC):
    """Content-addressed storage."""

    @abstractmethod
    async def upload_file(self, content: bytes, name: str, content_type: str) -> str:
        """Store ``content`` and return its locator (e.g. ``ipfs://<cid>``)."""

    @abstractmethod
    async def upload_json(self, document: Dict[str, Any], name: str) -> str:
        """Store a JSON document and return its locator."""

    async def close(self) -> None:
        return None


class Registrar(ABC):
    """Durable registration of a subject's final locator."""

    @abstractmethod
    async def register(self, subject_id: str, locator: str) -> RegistrationReceipt:
        """Write ``locator`` for ``subject_id``. Failure means the task is not complete."""

    async def close(self) -> None:
        return None


@dataclass
class Collaborators:
    """The set of collaborators a generation pipeline needs."""

    attributes: AttributeGenerator
    synthesizers: Dict[str, ImageSynthesizer]
    uploader: AssetUploader
    registrar: Registrar

    async def close(self) -> None:
        for synthesizer in self.synthesizers.values():
            await synthesizer.close()
        await self.uploader.close()
        await self.registrar.close()
