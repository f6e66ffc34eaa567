"""Content-addressed uploads through the Pinata pinning API."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

import httpx

from ..collaborators import AssetUploader
from ..errors import StageError


class PinataUploader(AssetUploader):
    """Pins files and JSON documents; locators are returned as ``ipfs://<cid>``."""

    def __init__(self, jwt: Optional[str] = None, base_url: str = "https://api.pinata.cloud", timeout: float = 60.0):
        self.jwt = jwt or os.getenv("PINATA_JWT")
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.jwt:
                raise StageError("PINATA_JWT must be set to upload assets")
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.jwt}"},
            )
        return self._client

    @staticmethod
    def _locator(response: httpx.Response) -> str:
        response.raise_for_status()
        cid = response.json().get("IpfsHash")
        if not cid:
            raise StageError("Pinning service returned no content identifier")
        return f"ipfs://{cid}"

    async def upload_file(self, content: bytes, name: str, content_type: str) -> str:
        client = await self._get_client()
        response = await client.post(
            "/pinning/pinFileToIPFS",
            files={"file": (name, content, content_type)},
            data={"pinataMetadata": json.dumps({"name": name})},
        )
        return self._locator(response)

    async def upload_json(self, document: Dict[str, Any], name: str) -> str:
        client = await self._get_client()
        response = await client.post(
            "/pinning/pinJSONToIPFS",
            json={"pinataContent": document, "pinataMetadata": {"name": name}},
        )
        return self._locator(response)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
