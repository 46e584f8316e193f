from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from pod_pipeline.config import settings
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.services.asset_storage import ImageLoadError, ImageStore
from pod_pipeline.shapes import openai_size

logger = logging.getLogger(__name__)

# Statuses meaning "this model is not available on the account"; answered with a model downgrade.
MODEL_UNAVAILABLE_STATUSES = frozenset({400, 403, 404})

GENERATION_FALLBACK_MODEL = "dall-e-3"
EDIT_FALLBACK_MODEL = "dall-e-2"

EXTRACT_ARTWORK_PROMPT = (
    "Extract only the artwork/design from this product image. Remove ALL background completely. "
    "Output ONLY the artwork element (logo, illustration, graphic) on a fully transparent background. "
    "No product, no surface, no shadows, just the isolated artwork as a clean transparent PNG."
)


class OpenAIImageError(RuntimeError):
    def __init__(self, *, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.is_network_error = status_code is None

    @property
    def model_unavailable(self) -> bool:
        return self.status_code in MODEL_UNAVAILABLE_STATUSES


@dataclass
class ImageOutput:
    url: str
    model: str
    operation: str


def build_openai_client(api_key: str) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, max_retries=0, timeout=settings.PROVIDER_REQUEST_TIMEOUT_SECONDS)


class OpenAIImageProvider:
    name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        image_store: ImageStore,
        usage: UsageRecorder | None = None,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ) -> None:
        self._client = client or build_openai_client(api_key)
        self._image_store = image_store
        self._usage = usage or NullUsageRecorder()
        self.model = model or settings.OPENAI_IMAGE_MODEL

    async def generate(self, prompt: str, *, shape: str | None = None) -> ImageOutput:
        size = openai_size(shape)
        try:
            response = await self._call_generate(model=self.model, prompt=prompt, size=size)
            used_model = self.model
        except OpenAIImageError as exc:
            if not exc.model_unavailable:
                raise
            logger.info("openai_images.generate_downgrade", extra={"status_code": exc.status_code})
            response = await self._call_generate(
                model=GENERATION_FALLBACK_MODEL, prompt=prompt, size=size, response_format="url"
            )
            used_model = GENERATION_FALLBACK_MODEL
        return self._accept(response, model=used_model, operation="generate")

    async def edit(
        self,
        prompt: str,
        *,
        reference_image: str,
        shape: str | None = None,
        size: str | None = None,
        operation: str = "edit",
        transparent: bool = False,
    ) -> ImageOutput:
        try:
            image = await self._image_store.load(reference_image)
        except ImageLoadError as exc:
            raise OpenAIImageError(message=f"Reference image unavailable: {exc}", status_code=422) from exc
        upload = (image.filename, image.content, image.content_type)
        edit_size = size or openai_size(shape)

        extra: dict[str, Any] = {"background": "transparent"} if transparent else {}
        try:
            response = await self._call_edit(model=self.model, prompt=prompt, size=edit_size, image=upload, **extra)
            used_model = self.model
        except OpenAIImageError as exc:
            if not exc.model_unavailable:
                raise
            logger.info("openai_images.edit_downgrade", extra={"status_code": exc.status_code})
            response = await self._call_edit(model=EDIT_FALLBACK_MODEL, prompt=prompt, size=edit_size, image=upload)
            used_model = EDIT_FALLBACK_MODEL
        return self._accept(response, model=used_model, operation=operation)

    async def extract_artwork(self, image_ref: str) -> ImageOutput:
        return await self.edit(
            EXTRACT_ARTWORK_PROMPT,
            reference_image=image_ref,
            size="1024x1024",
            operation="extract-artwork",
            transparent=True,
        )

    def _accept(self, response: Any, *, model: str, operation: str) -> ImageOutput:
        url = self._image_url_from(response)
        if not url:
            raise OpenAIImageError(message="OpenAI returned no image data", status_code=502)
        self._usage.record_call("openai", model, operation)
        return ImageOutput(url=url, model=model, operation=operation)

    def _image_url_from(self, response: Any) -> Optional[str]:
        data = getattr(response, "data", None) or []
        if not data:
            return None
        first = data[0]
        url = getattr(first, "url", None)
        if url:
            return url
        b64 = getattr(first, "b64_json", None)
        if b64:
            return self._image_store.save_base64(b64, "image/png")
        return None

    async def _call_generate(self, **kwargs: Any) -> Any:
        try:
            return await self._client.images.generate(**kwargs)
        except openai.APIStatusError as exc:
            raise OpenAIImageError(
                message=f"OpenAI image generation failed ({exc.status_code}): {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except openai.APIConnectionError as exc:
            raise OpenAIImageError(message=f"Network error while calling OpenAI: {exc}") from exc

    async def _call_edit(self, **kwargs: Any) -> Any:
        try:
            return await self._client.images.edit(**kwargs)
        except openai.APIStatusError as exc:
            raise OpenAIImageError(
                message=f"OpenAI image edit failed ({exc.status_code}): {exc.message}",
                status_code=exc.status_code,
            ) from exc
        except openai.APIConnectionError as exc:
            raise OpenAIImageError(message=f"Network error while calling OpenAI: {exc}") from exc
