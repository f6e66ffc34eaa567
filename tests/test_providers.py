import asyncio
import base64
import json

import httpx
import pytest

from mint_orchestrator.services.client import RelayRegistrar
from mint_orchestrator.services.errors import StageError, TransientStageError, is_transient
from mint_orchestrator.services.providers import (
    OpenAIImageSynthesizer,
    PinataUploader,
    SeededAttributeGenerator,
)


def mock_client(handler, base_url) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_seeded_attributes_are_deterministic():
    generator = SeededAttributeGenerator()

    first = await generator.generate("42", {"breed": "Sphynx"})
    second = await generator.generate("42", {"breed": "Sphynx"})

    assert first == second
    assert first.trait("Breed") == "Sphynx"
    assert first.trait("Weapon") in first.prompt
    assert first.name.endswith("#42")


@pytest.mark.asyncio
async def test_seeded_attributes_require_breed():
    with pytest.raises(StageError):
        await SeededAttributeGenerator().generate("42", {})


@pytest.mark.asyncio
async def test_openai_synthesizer_decodes_image_and_reports_progress():
    reported = []

    async def progress(value, message):
        reported.append(value)

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["prompt"] == "a ninja cat"
        assert payload["response_format"] == "b64_json"
        encoded = base64.b64encode(b"png-bytes").decode()
        return httpx.Response(200, json={"data": [{"b64_json": encoded}]})

    synthesizer = OpenAIImageSynthesizer(api_key="sk-test")
    synthesizer._client = mock_client(handler, synthesizer.base_url)

    asset = await synthesizer.synthesize("a ninja cat", {}, progress)

    assert asset.content == b"png-bytes"
    assert asset.provider == "dall-e"
    assert reported == [45]
    await synthesizer.close()


@pytest.mark.asyncio
async def test_openai_rejection_is_permanent_and_outage_is_transient():
    synthesizer = OpenAIImageSynthesizer(api_key="sk-test")
    synthesizer._client = mock_client(
        lambda request: httpx.Response(400, text="content_policy_violation"),
        synthesizer.base_url,
    )
    with pytest.raises(StageError) as rejected:
        await synthesizer.synthesize("prompt", {})
    assert not is_transient(rejected.value)

    synthesizer._client = mock_client(lambda request: httpx.Response(503), synthesizer.base_url)
    with pytest.raises(httpx.HTTPStatusError) as outage:
        await synthesizer.synthesize("prompt", {})
    assert is_transient(outage.value)


@pytest.mark.asyncio
async def test_pinata_uploader_returns_ipfs_locators():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"IpfsHash": f"Qm{len(paths)}"})

    uploader = PinataUploader(jwt="jwt-test")
    uploader._client = mock_client(handler, uploader.base_url)

    assert await uploader.upload_file(b"png", "42.png", "image/png") == "ipfs://Qm1"
    assert await uploader.upload_json({"name": "x"}, "42.json") == "ipfs://Qm2"
    assert paths == ["/pinning/pinFileToIPFS", "/pinning/pinJSONToIPFS"]


@pytest.mark.asyncio
async def test_relay_registrar_requires_transaction_hash():
    registrar = RelayRegistrar(relay_url="http://relay.test")
    registrar._client = mock_client(
        lambda request: httpx.Response(200, json={"transaction_hash": "0xabc", "block": 12}),
        "http://relay.test",
    )
    receipt = await registrar.register("42", "ipfs://meta")
    assert receipt.transaction_hash == "0xabc"

    registrar._client = mock_client(lambda request: httpx.Response(200, json={}), "http://relay.test")
    with pytest.raises(StageError):
        await registrar.register("42", "ipfs://meta")


def test_missing_credentials_fail_permanently(monkeypatch):
    monkeypatch.delenv("PINATA_JWT", raising=False)
    with pytest.raises(StageError):
        asyncio.run(PinataUploader(jwt="")._get_client())


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransientStageError("rate limited"), True),
        (StageError("bad prompt"), False),
        (httpx.ConnectTimeout("timed out"), True),
        (asyncio.TimeoutError(), True),
        (ValueError("bad value"), False),
    ],
)
def test_is_transient(error, expected):
    assert is_transient(error) is expected
