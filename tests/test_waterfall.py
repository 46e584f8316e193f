from __future__ import annotations

import asyncio

from pod_pipeline.polling import PollOutcome, PollOutcomeStatus
from pod_pipeline.providers.kie import KieApiError
from pod_pipeline.providers.openai_images import ImageOutput, OpenAIImageError
from pod_pipeline.services.image_waterfall import (
    FALLBACK_ERROR,
    FALLBACK_NO_KEY,
    FALLBACK_TIMEOUT,
    KEEP_CLOSE_SUFFIX,
    ProviderWaterfall,
    placeholder_url,
)

PLACEHOLDER_BASE = "https://placeholder.test/1024"


class FakeOpenAI:
    def __init__(self, *, edit_error: OpenAIImageError | None = None, generate_error: OpenAIImageError | None = None):
        self.edit_error = edit_error
        self.generate_error = generate_error
        self.generate_prompts: list[str] = []
        self.edit_prompts: list[str] = []

    async def edit(self, prompt: str, *, reference_image: str, shape=None):
        self.edit_prompts.append(prompt)
        if self.edit_error:
            raise self.edit_error
        return ImageOutput(url="https://cdn.openai.test/edit.png", model="gpt-image-1", operation="edit")

    async def generate(self, prompt: str, *, shape=None):
        self.generate_prompts.append(prompt)
        if self.generate_error:
            raise self.generate_error
        return ImageOutput(url="https://cdn.openai.test/gen.png", model="gpt-image-1", operation="generate")


class FakeKie:
    def __init__(self, outcome: PollOutcome | None = None, error: KieApiError | None = None):
        self.outcome = outcome or PollOutcome(
            status=PollOutcomeStatus.succeeded, job_id="t1", result_urls=["https://cdn.kie.test/k.png"]
        )
        self.error = error
        self.calls = 0

    async def generate(self, prompt: str, **kwargs):
        self.calls += 1
        if self.error:
            raise self.error
        return self.outcome


def _run(waterfall: ProviderWaterfall, prompt: str = "a fox", reference: str | None = None):
    return asyncio.run(waterfall.generate_image(prompt, reference_image=reference, deadline=4, poll_interval=1))


def test_no_configured_provider_returns_no_key_placeholder():
    result = _run(ProviderWaterfall(placeholder_base_url=PLACEHOLDER_BASE))

    assert result.provider == FALLBACK_NO_KEY
    assert result.image_url == placeholder_url("a fox", base_url=PLACEHOLDER_BASE)
    assert not result.is_live


def test_openai_generation_wins_first():
    kie = FakeKie()
    result = _run(ProviderWaterfall(openai_provider=FakeOpenAI(), kie_provider=kie))

    assert result.provider == "openai"
    assert result.image_url == "https://cdn.openai.test/gen.png"
    assert kie.calls == 0


def test_openai_failure_falls_through_to_kie():
    openai_provider = FakeOpenAI(generate_error=OpenAIImageError(message="server error", status_code=500))
    result = _run(ProviderWaterfall(openai_provider=openai_provider, kie_provider=FakeKie()))

    assert result.provider == "kie"
    assert result.image_url == "https://cdn.kie.test/k.png"


def test_edit_failure_retries_generation_with_keep_close_suffix():
    openai_provider = FakeOpenAI(edit_error=OpenAIImageError(message="too large", status_code=413))

    result = _run(ProviderWaterfall(openai_provider=openai_provider), reference="https://cdn.test/ref.png")

    assert result.provider == "openai"
    assert openai_provider.generate_prompts == [f"a fox{KEEP_CLOSE_SUFFIX}"]
    assert "without reference image" in result.message


def test_edit_network_error_skips_generation_and_goes_to_kie():
    openai_provider = FakeOpenAI(edit_error=OpenAIImageError(message="connection reset"))
    kie = FakeKie()

    result = _run(
        ProviderWaterfall(openai_provider=openai_provider, kie_provider=kie), reference="https://cdn.test/ref.png"
    )

    assert result.provider == "kie"
    assert openai_provider.generate_prompts == []
    assert kie.calls == 1


def test_all_configured_providers_failing_returns_error_placeholder():
    openai_provider = FakeOpenAI(generate_error=OpenAIImageError(message="quota", status_code=429))
    kie = FakeKie(error=KieApiError(message="kie down", status_code=500))

    result = _run(ProviderWaterfall(openai_provider=openai_provider, kie_provider=kie))

    assert result.provider == FALLBACK_ERROR
    assert "quota" in result.message
    assert "kie down" in result.message


def test_poll_timeout_yields_timeout_placeholder():
    kie = FakeKie(outcome=PollOutcome(status=PollOutcomeStatus.timed_out, job_id="t1", error_message="slow"))

    result = _run(ProviderWaterfall(kie_provider=kie))

    assert result.provider == FALLBACK_TIMEOUT
    assert result.timed_out


def test_alternate_order_tries_kie_first():
    openai_provider = FakeOpenAI()
    waterfall = ProviderWaterfall(openai_provider=openai_provider, kie_provider=FakeKie()).alternate()

    result = _run(waterfall)

    assert result.provider == "kie"
    assert openai_provider.generate_prompts == []


def test_openai_overrunning_the_deadline_skips_kie():
    class SlowFailingOpenAI(FakeOpenAI):
        async def generate(self, prompt: str, *, shape=None):
            await asyncio.sleep(0.05)
            raise OpenAIImageError(message="server error", status_code=500)

    class CancelAwareKie:
        def __init__(self) -> None:
            self.cancel_events: list = []

        async def generate(self, prompt: str, **kwargs):
            event = kwargs["cancel_event"]
            self.cancel_events.append(event)
            if event is not None and event.is_set():
                return PollOutcome(status=PollOutcomeStatus.cancelled, job_id="t1")
            return PollOutcome(
                status=PollOutcomeStatus.succeeded, job_id="t1", result_urls=["https://cdn.kie.test/k.png"]
            )

    kie = CancelAwareKie()
    waterfall = ProviderWaterfall(
        openai_provider=SlowFailingOpenAI(), kie_provider=kie, placeholder_base_url=PLACEHOLDER_BASE
    )

    result = asyncio.run(waterfall.generate_image("a fox", deadline=0.01, poll_interval=0.005))

    assert result.provider == FALLBACK_TIMEOUT
    assert kie.cancel_events == []
