from typing import Any, Dict, List, Optional

import pytest

from mint_orchestrator.services.collaborators import (
    AssetUploader,
    AttributeGenerator,
    Attributes,
    Collaborators,
    ImageSynthesizer,
    RegistrationReceipt,
    Registrar,
    SynthesizedAsset,
)
from mint_orchestrator.services.context import OrchestratorContext, OrchestratorSettings
from mint_orchestrator.services.errors import UpstreamError
from mint_orchestrator.services.events import EventSource, MintRequested
from mint_orchestrator.services.process_state import InMemoryProcessStateStore
from mint_orchestrator.services.task_store import InMemoryTaskStore
from mint_orchestrator.services.workflows.executor import WorkflowExecutor


def mint_event(subject_id, block_number, breed="Tabby", force=False) -> MintRequested:
    return MintRequested(
        subject_id=str(subject_id),
        requester="0x" + "ab" * 20,
        block_number=block_number,
        parameters={"breed": breed},
        transaction_hash=f"0xtx{subject_id}",
        force=force,
    )


class FakeEventSource(EventSource):
    """Serves a fixed list of events; block ranges listed in ``failing_from`` raise."""

    def __init__(self, head: int = 0, events: Optional[List[Any]] = None):
        self.head = head
        self.events = list(events or [])
        self.failing_from: set = set()
        self.head_error: Optional[Exception] = None
        self.calls: List[tuple] = []

    async def get_head(self) -> int:
        if self.head_error:
            raise self.head_error
        return self.head

    async def get_events(self, from_block: int, to_block: int):
        self.calls.append((from_block, to_block))
        if from_block in self.failing_from:
            raise UpstreamError(f"eth_getLogs failed for {from_block}-{to_block}")
        return [
            event for event in self.events
            if from_block <= event.block_number <= to_block
        ]


class StaticAttributes(AttributeGenerator):
    def __init__(self):
        self.errors: Dict[str, Exception] = {}

    async def generate(self, subject_id, parameters):
        if subject_id in self.errors:
            raise self.errors[subject_id]
        breed = parameters.get("breed", "Tabby")
        return Attributes(
            name=f"Ninja {breed} #{subject_id}",
            description="test ninja",
            traits=[{"trait_type": "Breed", "value": breed}],
            rarity={"tier": "Common"},
            prompt=f"token-{subject_id}",
        )


class StubSynthesizer(ImageSynthesizer):
    """Fails for prompts listed in ``errors``, otherwise reports halfway progress and returns bytes."""

    name = "stub"

    def __init__(self):
        self.errors: Dict[str, Exception] = {}
        self.prompts: List[str] = []

    async def synthesize(self, prompt, options, progress=None):
        self.prompts.append(prompt)
        if prompt in self.errors:
            raise self.errors[prompt]
        if progress is not None:
            await progress(50, "Rendering")
        return SynthesizedAsset(content=b"png-bytes", content_type="image/png", provider=self.name)


class RecordingUploader(AssetUploader):
    def __init__(self):
        self.files: List[str] = []
        self.documents: Dict[str, Dict[str, Any]] = {}

    async def upload_file(self, content, name, content_type):
        self.files.append(name)
        return f"ipfs://image-{name}"

    async def upload_json(self, document, name):
        self.documents[name] = document
        return f"ipfs://meta-{name}"


class RecordingRegistrar(Registrar):
    def __init__(self):
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    async def register(self, subject_id, locator):
        self.calls.append((subject_id, locator))
        if self.error:
            raise self.error
        return RegistrationReceipt(transaction_hash=f"0xreg{subject_id}")


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def collaborators():
    return Collaborators(
        attributes=StaticAttributes(),
        synthesizers={"stub": StubSynthesizer()},
        uploader=RecordingUploader(),
        registrar=RecordingRegistrar(),
    )


@pytest.fixture
def executor(task_store, collaborators):
    return WorkflowExecutor(task_store, collaborators)


@pytest.fixture
def event_source():
    return FakeEventSource()


@pytest.fixture
def settings():
    return OrchestratorSettings(default_provider="stub")


@pytest.fixture
def orchestrator(task_store, executor, event_source, settings):
    return OrchestratorContext(
        task_store=task_store,
        state_store=InMemoryProcessStateStore(),
        event_source=event_source,
        executor=executor,
        settings=settings,
    )
