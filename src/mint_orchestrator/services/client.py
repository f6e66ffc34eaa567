"""
Async chain clients.

``ChainClient`` reads mint requests from an Ethereum-style JSON-RPC endpoint
(``eth_blockNumber`` / ``eth_getLogs``); ``RelayRegistrar`` asks a signing relay
to write the final token URI on-chain. Both keep one lazily created
``httpx.AsyncClient`` and must be closed on shutdown.
"""

from __future__ import annotations

import itertools
import os
from typing import Any, Dict, List, Optional

import httpx

from .collaborators import RegistrationReceipt, Registrar
from .errors import StageError, UpstreamError
from .events import Event, EventSource, parse_log


class ChainClient(EventSource):
    """An async JSON-RPC wrapper exposing the contract's MintRequested logs."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        event_topic: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.rpc_url = rpc_url or os.getenv("RPC_URL")
        self.contract_address = contract_address or os.getenv("CONTRACT_ADDRESS")
        # without a topic filter every contract log is fetched and non-mint logs
        # surface as unparseable events
        self.event_topic = event_topic or os.getenv("MINT_EVENT_TOPIC")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client"""
        if self._client is None:
            if not self.rpc_url:
                raise ValueError(
                    "RPC_URL must be set. "
                    "Set it as an environment variable or pass rpc_url to ChainClient."
                )
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _call(self, method: str, params: List[Any]) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{method} failed: {exc}") from exc

        payload = response.json()
        if payload.get("error"):
            error = payload["error"]
            raise UpstreamError(f"{method} returned error {error.get('code')}: {error.get('message')}")
        return payload.get("result")

    async def get_head(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        if not self.contract_address:
            raise ValueError("CONTRACT_ADDRESS must be set to query logs")
        log_filter: Dict[str, Any] = {
            "address": self.contract_address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        if self.event_topic:
            log_filter["topics"] = [self.event_topic]
        return await self._call("eth_getLogs", [log_filter]) or []

    async def get_events(self, from_block: int, to_block: int) -> List[Event]:
        return [parse_log(log) for log in await self.get_logs(from_block, to_block)]

    async def close(self):
        """Close httpx client connection"""
        if self._client:
            await self._client.aclose()
            self._client = None


class RelayRegistrar(Registrar):
    """
    Registers token URIs through an HTTP signing relay.

    The relay holds the contract owner's key and submits ``setTokenURI``; it
    answers with the transaction hash once the transaction is mined.
    """

    def __init__(self, relay_url: Optional[str] = None, token: Optional[str] = None, timeout: float = 60.0):
        self.relay_url = relay_url or os.getenv("REGISTRAR_URL")
        self.token = token or os.getenv("REGISTRAR_TOKEN")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.relay_url:
                raise StageError("REGISTRAR_URL must be set to register token URIs")
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(base_url=self.relay_url, timeout=self.timeout, headers=headers)
        return self._client

    async def register(self, subject_id: str, locator: str) -> RegistrationReceipt:
        client = await self._get_client()
        response = await client.post(
            "/register",
            json={"token_id": subject_id, "token_uri": locator},
        )
        response.raise_for_status()
        data = response.json()
        tx_hash = data.get("transaction_hash")
        if not tx_hash:
            raise StageError(f"Registration relay returned no transaction hash for token {subject_id}")
        return RegistrationReceipt(transaction_hash=tx_hash, confirmation=data)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
