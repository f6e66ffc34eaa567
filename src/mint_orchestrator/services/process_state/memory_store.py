"""In-process ProcessStateStore for tests and local runs."""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from .base import ProcessState, ProcessStateStore


class InMemoryProcessStateStore(ProcessStateStore):
    """Keeps the serialized document so loads never alias a caller's object."""

    def __init__(self, initial: Optional[ProcessState] = None) -> None:
        self._document: Optional[Dict[str, Any]] = initial.to_dict() if initial else None

    async def load(self) -> ProcessState:
        return ProcessState.from_dict(copy.deepcopy(self._document))

    async def save(self, state: ProcessState) -> None:
        self._document = copy.deepcopy(state.to_dict())

    async def close(self) -> None:
        return None
