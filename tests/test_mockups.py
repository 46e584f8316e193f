from __future__ import annotations

import asyncio

from pod_pipeline.providers.openai_images import ImageOutput
from pod_pipeline.providers.printful import MockupRenderResult
from pod_pipeline.services.image_waterfall import ProviderWaterfall
from pod_pipeline.services.mockups import MockupResolver


class FakePrintful:
    def __init__(self, result: MockupRenderResult, configured: bool = True) -> None:
        self.result = result
        self.configured = configured
        self.calls = 0

    async def render_mockup(self, artwork_ref: str, category: str, **kwargs) -> MockupRenderResult:
        self.calls += 1
        return self.result


class RecordingOpenAI:
    def __init__(self) -> None:
        self.edits: list[tuple[str, str]] = []

    async def edit(self, prompt: str, *, reference_image: str, shape=None):
        self.edits.append((prompt, reference_image))
        return ImageOutput(url="https://cdn.openai.test/mockup.png", model="gpt-image-1", operation="edit")

    async def generate(self, prompt: str, *, shape=None):
        raise AssertionError("generation should not run when the edit succeeds")


def test_printful_result_is_used_when_rendered():
    printful = FakePrintful(MockupRenderResult(["https://pf.test/1.png", "https://pf.test/2.png"], "printful", "ok"))
    openai_provider = RecordingOpenAI()
    resolver = MockupResolver(printful=printful, waterfall=ProviderWaterfall(openai_provider=openai_provider))

    result = asyncio.run(resolver.resolve_mockup("https://cdn.test/art.png", "mug"))

    assert result.provider == "printful"
    assert result.mockupImageUrl == "https://pf.test/1.png"
    assert result.mockupUrls == ["https://pf.test/1.png", "https://pf.test/2.png"]
    assert openai_provider.edits == []


def test_printful_miss_falls_back_to_image_edit_with_note():
    printful = FakePrintful(MockupRenderResult([], "printful-unsupported", "Product type not mapped."))
    openai_provider = RecordingOpenAI()
    resolver = MockupResolver(printful=printful, waterfall=ProviderWaterfall(openai_provider=openai_provider))

    result = asyncio.run(resolver.resolve_mockup("https://cdn.test/art.png", "surfboard"))

    assert result.provider == "openai"
    assert result.providerMessage.startswith("Product type not mapped.")
    prompt, reference = openai_provider.edits[0]
    assert "photorealistic surfboard product mockup" in prompt
    assert reference == "https://cdn.test/art.png"


def test_unconfigured_printful_is_skipped():
    printful = FakePrintful(MockupRenderResult([], "printful-no-key", "missing"), configured=False)
    resolver = MockupResolver(printful=printful, waterfall=ProviderWaterfall())

    result = asyncio.run(resolver.resolve_mockup("https://cdn.test/art.png", "mug"))

    assert printful.calls == 0
    assert result.provider == "fallback-no-key"
    assert result.mockupUrls == [result.mockupImageUrl]
