"""
Upstream events and the boundary that decodes raw chain logs into them.

The event source never hands the scanner an untyped payload: every log
becomes either a ``MintRequested`` or an ``UnparseableEvent`` carrying the
reason it was rejected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Union

from .errors import EventParseError


@dataclass(frozen=True)
class MintRequested:
    """A request to generate the artifact for ``subject_id``."""

    subject_id: str
    requester: str
    block_number: int
    parameters: Dict[str, Any] = field(default_factory=dict)
    transaction_hash: str = ""
    log_index: int = 0
    force: bool = False
    kind: Literal["mint_requested"] = "mint_requested"


@dataclass(frozen=True)
class UnparseableEvent:
    """A log that could not be decoded; kept so the scanner can report it."""

    reason: str
    block_number: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)
    kind: Literal["unparseable"] = "unparseable"


Event = Union[MintRequested, UnparseableEvent]


class EventSource(ABC):
    """Contract for the upstream event log."""

    @abstractmethod
    async def get_head(self) -> int:
        """Return the current head block number."""

    @abstractmethod
    async def get_events(self, from_block: int, to_block: int) -> List[Event]:
        """Return events in the inclusive block range ``[from_block, to_block]``."""

    async def close(self) -> None:
        return None


def _hex_to_int(value: Any, label: str) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise EventParseError(f"{label} is not a hex quantity: {value!r}")
    try:
        return int(value, 16)
    except ValueError as exc:
        raise EventParseError(f"{label} is not a hex quantity: {value!r}") from exc


def _decode_abi_string(data: str) -> str:
    """Decode a single dynamic ``string`` from ABI-encoded log data."""
    body = data[2:] if data.startswith("0x") else data
    try:
        raw = bytes.fromhex(body)
    except ValueError as exc:
        raise EventParseError("log data is not valid hex") from exc
    if len(raw) < 64:
        raise EventParseError("log data too short for a string argument")
    offset = int.from_bytes(raw[0:32], "big")
    if offset + 32 > len(raw):
        raise EventParseError("string offset points outside log data")
    length = int.from_bytes(raw[offset:offset + 32], "big")
    start = offset + 32
    if start + length > len(raw):
        raise EventParseError("string length exceeds log data")
    try:
        return raw[start:start + length].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EventParseError("string argument is not valid UTF-8") from exc


def decode_mint_log(log: Mapping[str, Any]) -> MintRequested:
    """
    Decode ``MintRequested(uint256 indexed tokenId, address indexed buyer, string breed)``.

    Raises EventParseError when the log does not have that shape.
    """
    topics = log.get("topics") or []
    if len(topics) < 3:
        raise EventParseError(f"expected 3 topics, got {len(topics)}", dict(log))

    token_id = _hex_to_int(topics[1], "tokenId topic")
    buyer_topic = topics[2]
    if not isinstance(buyer_topic, str) or len(buyer_topic) < 42:
        raise EventParseError("buyer topic is not an address", dict(log))
    buyer = "0x" + buyer_topic[-40:].lower()
    breed = _decode_abi_string(log.get("data") or "0x")

    return MintRequested(
        subject_id=str(token_id),
        requester=buyer,
        block_number=_hex_to_int(log.get("blockNumber", "0x0"), "blockNumber"),
        parameters={"breed": breed},
        transaction_hash=log.get("transactionHash") or "",
        log_index=_hex_to_int(log.get("logIndex", "0x0"), "logIndex"),
    )


def parse_log(log: Mapping[str, Any]) -> Event:
    """Decode ``log``, turning any decode failure into an UnparseableEvent."""
    try:
        return decode_mint_log(log)
    except EventParseError as exc:
        block = log.get("blockNumber")
        try:
            block_number = _hex_to_int(block, "blockNumber") if block is not None else 0
        except EventParseError:
            block_number = 0
        return UnparseableEvent(reason=exc.reason, block_number=block_number, raw=dict(log))
