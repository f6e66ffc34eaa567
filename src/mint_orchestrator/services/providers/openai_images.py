"""Image synthesis through the OpenAI images API."""

from __future__ import annotations

import base64
import os
from typing import Any, Dict, Optional

import httpx

from ..collaborators import ImageSynthesizer, ProgressCallback, SynthesizedAsset
from ..errors import StageError


class OpenAIImageSynthesizer(ImageSynthesizer):
    """Calls ``/v1/images/generations`` and returns the decoded PNG bytes."""

    name = "dall-e"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self.size = size
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.api_key:
                raise StageError("OPENAI_API_KEY must be set to use the dall-e provider")
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def synthesize(
        self,
        prompt: str,
        options: Dict[str, Any],
        progress: Optional[ProgressCallback] = None,
    ) -> SynthesizedAsset:
        client = await self._get_client()
        if progress:
            await progress(45, f"Requesting image from {self.model}")

        response = await client.post(
            "/images/generations",
            json={
                "model": options.get("model", self.model),
                "prompt": prompt,
                "n": 1,
                "size": options.get("size", self.size),
                "response_format": "b64_json",
            },
        )
        if response.status_code == 400:
            # content policy rejections and malformed prompts are not retryable
            raise StageError(f"Image provider rejected prompt: {response.text[:200]}")
        response.raise_for_status()

        data = response.json().get("data") or []
        if not data or not data[0].get("b64_json"):
            raise StageError("Image provider returned no image data")

        return SynthesizedAsset(
            content=base64.b64decode(data[0]["b64_json"]),
            content_type="image/png",
            provider=self.name,
            details={"model": self.model, "revised_prompt": data[0].get("revised_prompt")},
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
