from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote

from pod_pipeline.config import settings
from pod_pipeline.polling import PollOutcomeStatus, deadline_event
from pod_pipeline.providers.kie import KieApiError, KieImageProvider
from pod_pipeline.providers.openai_images import OpenAIImageError, OpenAIImageProvider

logger = logging.getLogger(__name__)

PROVIDER_OPENAI = "openai"
PROVIDER_KIE = "kie"
FALLBACK_NO_KEY = "fallback-no-key"
FALLBACK_ERROR = "fallback-error"
FALLBACK_TIMEOUT = "fallback-timeout"

KEEP_CLOSE_SUFFIX = (
    "\n\nKeep the updated design very close to the previous version and apply only the requested change."
)


@dataclass
class GenerationResult:
    image_url: str
    provider: str
    message: str
    model: Optional[str] = None
    image_urls: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.image_urls:
            self.image_urls = [self.image_url]

    @property
    def is_live(self) -> bool:
        return is_live_provider(self.provider)

    @property
    def timed_out(self) -> bool:
        return self.provider == FALLBACK_TIMEOUT


def placeholder_url(prompt: str, *, base_url: str | None = None, length: int = 48) -> str:
    base = (base_url or settings.PLACEHOLDER_IMAGE_BASE_URL).rstrip("/")
    return f"{base}?text={quote(prompt[:length], safe='')}"


@dataclass
class _Attempt:
    notes: list[str] = field(default_factory=list)
    configured: int = 0
    timed_out: bool = False
    cancelled: bool = False


class ProviderWaterfall:
    """
    Tries image providers in a fixed order and returns the first accepted image.

    Default order is OpenAI (synchronous) then KIE (submit + poll); when both
    are missing or fail, a placeholder URL tagged `fallback-*` is returned so
    callers always get an image reference back.
    """

    def __init__(
        self,
        *,
        openai_provider: OpenAIImageProvider | None = None,
        kie_provider: KieImageProvider | None = None,
        placeholder_base_url: str | None = None,
        order: tuple[str, ...] = (PROVIDER_OPENAI, PROVIDER_KIE),
    ) -> None:
        self.openai_provider = openai_provider
        self.kie_provider = kie_provider
        self.placeholder_base_url = placeholder_base_url
        self.order = order

    def alternate(self) -> "ProviderWaterfall":
        return ProviderWaterfall(
            openai_provider=self.openai_provider,
            kie_provider=self.kie_provider,
            placeholder_base_url=self.placeholder_base_url,
            order=tuple(reversed(self.order)),
        )

    @property
    def has_live_provider(self) -> bool:
        return self.openai_provider is not None or self.kie_provider is not None

    async def generate_image(
        self,
        prompt: str,
        *,
        reference_image: str | None = None,
        shape: str | None = None,
        deadline: float | None = None,
        poll_interval: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        attempt = _Attempt()
        # The deadline bounds the whole call, so time spent in earlier tiers shortens KIE polling.
        with deadline_event(deadline, cancel_event) as cancel:
            for tier in self.order:
                if attempt.cancelled or (cancel is not None and cancel.is_set()):
                    attempt.cancelled = True
                    break
                if tier == PROVIDER_OPENAI:
                    result = await self._try_openai(prompt, reference_image, shape, attempt)
                else:
                    result = await self._try_kie(
                        prompt, reference_image, shape, deadline, poll_interval, cancel, attempt
                    )
                if result is not None:
                    return result
        return self._placeholder(prompt, reference_image, attempt)

    async def _try_openai(
        self, prompt: str, reference_image: str | None, shape: str | None, attempt: _Attempt
    ) -> GenerationResult | None:
        provider = self.openai_provider
        if provider is None:
            return None
        attempt.configured += 1

        generation_prompt = prompt
        if reference_image:
            try:
                output = await provider.edit(prompt, reference_image=reference_image, shape=shape)
                return GenerationResult(
                    image_url=output.url,
                    provider=PROVIDER_OPENAI,
                    message="Live OpenAI image edit used. Reference image provided: true.",
                    model=output.model,
                )
            except OpenAIImageError as exc:
                attempt.notes.append(str(exc))
                logger.warning("waterfall.openai_edit_failed", extra={"status_code": exc.status_code})
                if exc.is_network_error:
                    return None
            generation_prompt = f"{prompt}{KEEP_CLOSE_SUFFIX}"

        try:
            output = await provider.generate(generation_prompt, shape=shape)
        except OpenAIImageError as exc:
            attempt.notes.append(str(exc))
            logger.warning("waterfall.openai_generate_failed", extra={"status_code": exc.status_code})
            return None

        suffix = " without reference image" if reference_image else ""
        return GenerationResult(
            image_url=output.url,
            provider=PROVIDER_OPENAI,
            message=(
                f"Live OpenAI image generation used{suffix}. "
                f"Reference image requested: {str(bool(reference_image)).lower()}."
            ),
            model=output.model,
        )

    async def _try_kie(
        self,
        prompt: str,
        reference_image: str | None,
        shape: str | None,
        deadline: float | None,
        poll_interval: float | None,
        cancel_event: asyncio.Event | None,
        attempt: _Attempt,
    ) -> GenerationResult | None:
        provider = self.kie_provider
        if provider is None:
            return None
        attempt.configured += 1

        try:
            outcome = await provider.generate(
                prompt,
                reference_image=reference_image,
                shape=shape,
                deadline=deadline,
                poll_interval=poll_interval,
                cancel_event=cancel_event,
            )
        except KieApiError as exc:
            attempt.notes.append(str(exc))
            logger.warning("waterfall.kie_failed", extra={"status_code": exc.status_code})
            return None

        if outcome.ok:
            message = f"Live KIE image generation used. Reference image provided: {str(bool(reference_image)).lower()}."
            if outcome.best_effort:
                message += " Result accepted without a success flag."
            return GenerationResult(
                image_url=outcome.result_urls[0],
                provider=PROVIDER_KIE,
                message=message,
                model="image",
                image_urls=list(outcome.result_urls),
            )
        if outcome.status == PollOutcomeStatus.timed_out:
            attempt.timed_out = True
        elif outcome.status == PollOutcomeStatus.cancelled:
            attempt.cancelled = True
        if outcome.error_message:
            attempt.notes.append(outcome.error_message)
        return None

    def _placeholder(self, prompt: str, reference_image: str | None, attempt: _Attempt) -> GenerationResult:
        if attempt.timed_out or attempt.cancelled:
            tag = FALLBACK_TIMEOUT
        elif attempt.configured:
            tag = FALLBACK_ERROR
        else:
            tag = FALLBACK_NO_KEY

        if tag == FALLBACK_NO_KEY:
            message = "No usable image provider key is configured."
        else:
            message = " ".join(attempt.notes) or "Image providers did not return a result."
        message = f"{message} Reference image provided: {str(bool(reference_image)).lower()}."
        logger.info("waterfall.placeholder", extra={"provider": tag})
        return GenerationResult(
            image_url=placeholder_url(prompt, base_url=self.placeholder_base_url),
            provider=tag,
            message=message,
        )


def is_live_provider(tag: str) -> bool:
    return not tag.startswith("fallback")
