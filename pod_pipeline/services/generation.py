from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from openai import AsyncOpenAI

from pod_pipeline.config import is_usable_key, settings
from pod_pipeline.db.models import ShopSettings
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.polling import AsyncJobPoller
from pod_pipeline.providers.kie import KieImageProvider
from pod_pipeline.providers.openai_images import OpenAIImageProvider, build_openai_client
from pod_pipeline.providers.printful import PrintfulMockupProvider
from pod_pipeline.schemas import (
    ArtworkExtractionResult,
    ImageResult,
    LifestyleImagesResult,
    ListingCopyResult,
    MockupImageResult,
    ProductImageDescription,
)
from pod_pipeline.services.artwork import ProductImageAnalyzer, extract_transparent_artwork
from pod_pipeline.services.asset_storage import ImageStore
from pod_pipeline.services.image_waterfall import FALLBACK_ERROR, GenerationResult, ProviderWaterfall, placeholder_url
from pod_pipeline.services.listing_copy import ListingCopyGenerator
from pod_pipeline.services.mockups import MockupResolver
from pod_pipeline.services.prompts import normalize_scene_prompts

logger = logging.getLogger(__name__)


def _pick(stored: Optional[str], default: Optional[str]) -> Optional[str]:
    return stored.strip() if stored and stored.strip() else default


@dataclass
class ProviderKeys:
    openai_api_key: Optional[str] = None
    kie_api_key: Optional[str] = None
    printful_api_key: Optional[str] = None
    kie_generate_url: Optional[str] = None
    kie_edit_url: Optional[str] = None

    @classmethod
    def resolve(cls, record: ShopSettings | None = None) -> "ProviderKeys":
        """Stored per-shop keys win over environment defaults."""
        return cls(
            openai_api_key=_pick(record.openai_api_key if record else None, settings.OPENAI_API_KEY),
            kie_api_key=_pick(record.kie_api_key if record else None, settings.KIE_API_KEY),
            printful_api_key=_pick(record.printful_api_key if record else None, settings.PRINTFUL_API_KEY),
            kie_generate_url=settings.KIE_GENERATE_URL,
            kie_edit_url=settings.KIE_EDIT_URL,
        )


def summarize_scenes(results: list[GenerationResult]) -> LifestyleImagesResult:
    providers = [result.provider for result in results]
    if not providers:
        provider = FALLBACK_ERROR
    elif len(set(providers)) == 1:
        provider = providers[0]
    elif all(result.is_live for result in results):
        provider = "mixed"
    else:
        provider = "mixed-fallback"

    messages: list[str] = []
    for result in results:
        if result.message and result.message not in messages:
            messages.append(result.message)
    return LifestyleImagesResult(
        imageUrls=[result.image_url for result in results],
        providers=providers,
        provider=provider,
        providerMessage=" | ".join(messages),
    )


def placeholder_scenes(prompts: list[str], message: str) -> list[GenerationResult]:
    return [
        GenerationResult(image_url=placeholder_url(prompt, length=60), provider=FALLBACK_ERROR, message=message)
        for prompt in prompts
    ]


class PodPipelineService:
    """
    Generation entry points for one shop's provider keys.

    Every method takes plain values and returns pydantic results carrying the
    image/copy payload plus provider provenance.
    """

    def __init__(
        self,
        *,
        keys: ProviderKeys,
        image_store: ImageStore,
        usage: UsageRecorder | None = None,
        poller: AsyncJobPoller | None = None,
        openai_client: AsyncOpenAI | None = None,
    ) -> None:
        self.keys = keys
        self.image_store = image_store
        self.usage = usage or NullUsageRecorder()
        self.poller = poller or AsyncJobPoller()

        if openai_client is None and is_usable_key(keys.openai_api_key):
            openai_client = build_openai_client(keys.openai_api_key or "")
        self.openai_images = (
            OpenAIImageProvider(
                api_key=keys.openai_api_key or "", image_store=image_store, usage=self.usage, client=openai_client
            )
            if openai_client is not None
            else None
        )
        self.kie = (
            KieImageProvider(
                api_key=keys.kie_api_key or "",
                generate_url=keys.kie_generate_url,
                edit_url=keys.kie_edit_url,
                poller=self.poller,
                usage=self.usage,
            )
            if is_usable_key(keys.kie_api_key)
            else None
        )
        self.printful = PrintfulMockupProvider(
            api_key=keys.printful_api_key, image_store=image_store, poller=self.poller, usage=self.usage
        )
        self.waterfall = ProviderWaterfall(openai_provider=self.openai_images, kie_provider=self.kie)
        self.mockups = MockupResolver(printful=self.printful, waterfall=self.waterfall)
        self.copywriter = ListingCopyGenerator(api_key=keys.openai_api_key, usage=self.usage, client=openai_client)
        self.analyzer = ProductImageAnalyzer(api_key=keys.openai_api_key, usage=self.usage, client=openai_client)

    async def generate_design_image(
        self,
        artwork_prompt: str,
        *,
        reference_image: str | None = None,
        shape: str | None = None,
        deadline: float | None = None,
        poll_interval: float | None = None,
    ) -> ImageResult:
        result = await self.waterfall.generate_image(
            artwork_prompt,
            reference_image=reference_image,
            shape=shape,
            deadline=deadline or settings.DESIGN_POLL_DEADLINE_SECONDS,
            poll_interval=poll_interval or settings.DESIGN_POLL_INTERVAL_SECONDS,
        )
        return ImageResult(imageUrl=result.image_url, provider=result.provider, providerMessage=result.message)

    async def generate_lifestyle_scenes(
        self, prompts: list[str], *, reference_image: str | None, shape: str | None = None
    ) -> list[GenerationResult]:
        results = []
        for prompt in prompts:
            results.append(
                await self.waterfall.generate_image(
                    prompt,
                    reference_image=reference_image,
                    shape=shape,
                    deadline=settings.LIFESTYLE_POLL_DEADLINE_SECONDS,
                    poll_interval=settings.LIFESTYLE_POLL_INTERVAL_SECONDS,
                )
            )
        return results

    async def sweep_unsatisfied_scenes(
        self,
        prompts: list[str],
        results: list[GenerationResult],
        *,
        reference_image: str | None,
        shape: str | None = None,
    ) -> list[GenerationResult]:
        """Re-run scenes that ended on a placeholder through the alternate provider order."""
        if not self.waterfall.has_live_provider or all(result.is_live for result in results):
            return list(results)
        alternate = self.waterfall.alternate()
        swept = list(results)
        for index, (prompt, result) in enumerate(zip(prompts, results)):
            if result.is_live:
                continue
            retried = await alternate.generate_image(
                prompt,
                reference_image=reference_image,
                shape=shape,
                deadline=settings.LIFESTYLE_POLL_DEADLINE_SECONDS,
                poll_interval=settings.LIFESTYLE_POLL_INTERVAL_SECONDS,
            )
            if retried.is_live:
                swept[index] = retried
        logger.info(
            "lifestyle.sweep_done",
            extra={"recovered": sum(1 for before, after in zip(results, swept) if before is not after)},
        )
        return swept

    async def generate_lifestyle_images(
        self,
        product_type: str,
        reference_image: str | None,
        *,
        prompts: list[str] | None = None,
        shape: str | None = None,
    ) -> LifestyleImagesResult:
        scene_prompts = normalize_scene_prompts(prompts, product_type)
        results = await self.generate_lifestyle_scenes(scene_prompts, reference_image=reference_image, shape=shape)
        results = await self.sweep_unsatisfied_scenes(
            scene_prompts, results, reference_image=reference_image, shape=shape
        )
        return summarize_scenes(results)

    async def generate_listing_copy(self, concept: str, category: str) -> ListingCopyResult:
        return await self.copywriter.generate_copy(concept, category)

    async def extract_artwork(self, image_ref: str | None) -> ArtworkExtractionResult:
        return await extract_transparent_artwork(self.openai_images, image_ref)

    async def resolve_mockup(
        self,
        artwork_ref: str,
        category: str,
        *,
        catalog_product_id: int | str | None = None,
        shape: str | None = None,
    ) -> MockupImageResult:
        return await self.mockups.resolve_mockup(
            artwork_ref, category, catalog_product_id=catalog_product_id, shape=shape
        )

    async def describe_product_image(self, image_base64: str) -> ProductImageDescription:
        return await self.analyzer.describe(image_base64)

    async def get_product_catalog(self) -> dict[str, Any]:
        return await self.printful.get_product_catalog()
