from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI

from pod_pipeline.config import is_usable_key, settings
from pod_pipeline.errors import InvalidRequestError, PodPipelineError
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.providers.openai_images import OpenAIImageError, OpenAIImageProvider, build_openai_client
from pod_pipeline.schemas import ArtworkExtractionResult, ProductImageDescription

logger = logging.getLogger(__name__)

VISION_SYSTEM_PROMPT = (
    "You are a product design analyst. When given an image of a product (t-shirt, mug, poster, etc), "
    "describe ONLY the artwork/design on the product in detail. Focus on: the subject matter, art style, "
    "colour palette, mood, and any text. Do NOT describe the product itself (the blank t-shirt, mug shape, etc), "
    "only the printed design. Write a concise, vivid description that could be used as a prompt to recreate "
    "a similar design. Keep it under 100 words."
)


async def extract_transparent_artwork(
    provider: OpenAIImageProvider | None, image_ref: str | None
) -> ArtworkExtractionResult:
    if provider is None:
        return ArtworkExtractionResult(
            artworkUrl=None, provider="fallback-no-key", providerMessage="OpenAI API key is missing or invalid format."
        )
    if not (image_ref or "").strip():
        return ArtworkExtractionResult(artworkUrl=None, provider="skipped", providerMessage="No design image to extract from.")
    try:
        output = await provider.extract_artwork(image_ref)
    except OpenAIImageError as exc:
        logger.warning("artwork.extract_failed", extra={"status_code": exc.status_code})
        return ArtworkExtractionResult(artworkUrl=None, provider="fallback-error", providerMessage=str(exc))
    return ArtworkExtractionResult(
        artworkUrl=output.url, provider="openai", providerMessage=f"Artwork extracted with {output.model}."
    )


class ProductImageAnalyzer:
    """Turns a photo of an existing product into a design concept string."""

    def __init__(
        self,
        *,
        api_key: str | None,
        usage: UsageRecorder | None = None,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._usage = usage or NullUsageRecorder()
        self.model = model or settings.OPENAI_VISION_MODEL

    async def describe(self, image_base64: str) -> ProductImageDescription:
        if self._client is None and not is_usable_key(self._api_key):
            raise InvalidRequestError(message="OpenAI API key is missing or invalid.")
        if not (image_base64 or "").strip():
            raise InvalidRequestError(message="image is required")

        image_url = image_base64 if image_base64.startswith("data:") else f"data:image/png;base64,{image_base64}"
        client = self._client or build_openai_client(self._api_key or "")
        try:
            response = await client.chat.completions.create(
                model=self.model,
                max_tokens=400,
                messages=[
                    {"role": "system", "content": VISION_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "text",
                                "text": "Describe the artwork/design on this product so I can recreate something similar:",
                            },
                            {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                        ],
                    },
                ],
            )
        except openai.APIStatusError as exc:
            raise PodPipelineError(
                message=f"OpenAI vision request failed ({exc.status_code}): {exc.message}", status_code=502
            ) from exc
        except openai.APIConnectionError as exc:
            raise PodPipelineError(message=f"Network error while calling OpenAI: {exc}", status_code=502) from exc

        self._usage.record_call("openai", self.model, "vision")
        description = (response.choices[0].message.content or "").strip()
        if not description:
            raise PodPipelineError(message="OpenAI returned an empty description.", status_code=502)
        return ProductImageDescription(description=description)
