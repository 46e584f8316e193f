from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from pod_pipeline.errors import InvalidRequestError, PodPipelineError
from pod_pipeline.providers.openai_images import ImageOutput, OpenAIImageError
from pod_pipeline.services.artwork import ProductImageAnalyzer, extract_transparent_artwork


class FakeExtractor:
    def __init__(self, error: OpenAIImageError | None = None) -> None:
        self.error = error

    async def extract_artwork(self, image_ref: str) -> ImageOutput:
        if self.error:
            raise self.error
        return ImageOutput(url="/uploads/art.png", model="gpt-image-1", operation="extract-artwork")


class FakeVisionCompletions:
    def __init__(self, content: str | None = None, error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


def _analyzer(completions: FakeVisionCompletions) -> ProductImageAnalyzer:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return ProductImageAnalyzer(api_key="sk-live", client=client)


def test_extraction_outcomes():
    assert asyncio.run(extract_transparent_artwork(None, "https://cdn.test/a.png")).provider == "fallback-no-key"
    assert asyncio.run(extract_transparent_artwork(FakeExtractor(), "")).provider == "skipped"

    failed = asyncio.run(
        extract_transparent_artwork(FakeExtractor(OpenAIImageError(message="nope", status_code=400)), "x")
    )
    assert failed.provider == "fallback-error"
    assert failed.artworkUrl is None

    extracted = asyncio.run(extract_transparent_artwork(FakeExtractor(), "https://cdn.test/a.png"))
    assert extracted.provider == "openai"
    assert extracted.artworkUrl == "/uploads/art.png"


def test_describe_wraps_raw_base64_as_data_uri():
    completions = FakeVisionCompletions(content="  A neon fox in synthwave style.  ")

    result = asyncio.run(_analyzer(completions).describe("AAAA"))

    assert result.description == "A neon fox in synthwave style."
    image_part = completions.calls[0]["messages"][1]["content"][1]
    assert image_part["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_describe_requires_key_and_image():
    with pytest.raises(InvalidRequestError, match="API key"):
        asyncio.run(ProductImageAnalyzer(api_key=None).describe("AAAA"))
    with pytest.raises(InvalidRequestError, match="image is required"):
        asyncio.run(_analyzer(FakeVisionCompletions(content="x")).describe("  "))


def test_describe_maps_api_errors_and_empty_answers_to_bad_gateway():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.APIStatusError("rate limited", response=httpx.Response(429, request=request), body=None)

    with pytest.raises(PodPipelineError) as excinfo:
        asyncio.run(_analyzer(FakeVisionCompletions(error=error)).describe("AAAA"))
    assert excinfo.value.status_code == 502

    with pytest.raises(PodPipelineError, match="empty description"):
        asyncio.run(_analyzer(FakeVisionCompletions(content="")).describe("AAAA"))
