from __future__ import annotations

import logging

from pod_pipeline.config import settings
from pod_pipeline.providers.printful import PrintfulMockupProvider
from pod_pipeline.schemas import MockupImageResult
from pod_pipeline.services.image_waterfall import ProviderWaterfall
from pod_pipeline.services.prompts import build_mockup_prompt

logger = logging.getLogger(__name__)


class MockupResolver:
    """Printful renders first; any Printful miss goes through the image waterfall."""

    def __init__(self, *, printful: PrintfulMockupProvider | None, waterfall: ProviderWaterfall) -> None:
        self.printful = printful
        self.waterfall = waterfall

    async def resolve_mockup(
        self,
        artwork_ref: str,
        category: str,
        *,
        catalog_product_id: int | str | None = None,
        shape: str | None = None,
    ) -> MockupImageResult:
        printful_note = ""
        if self.printful is not None and self.printful.configured:
            rendered = await self.printful.render_mockup(
                artwork_ref,
                category,
                catalog_product_id=catalog_product_id,
                poll_interval=settings.MOCKUP_POLL_INTERVAL_SECONDS,
                deadline=settings.MOCKUP_POLL_DEADLINE_SECONDS,
            )
            if rendered.ok:
                return MockupImageResult(
                    mockupImageUrl=rendered.mockup_urls[0],
                    mockupUrls=rendered.mockup_urls,
                    provider=rendered.provider,
                    providerMessage=rendered.message,
                )
            logger.info("mockups.printful_fallthrough", extra={"provider": rendered.provider})
            printful_note = f"{rendered.message} "

        generated = await self.waterfall.generate_image(
            build_mockup_prompt(category),
            reference_image=artwork_ref,
            shape=shape,
            deadline=settings.MOCKUP_POLL_DEADLINE_SECONDS,
            poll_interval=settings.MOCKUP_POLL_INTERVAL_SECONDS,
        )
        return MockupImageResult(
            mockupImageUrl=generated.image_url,
            mockupUrls=list(generated.image_urls),
            provider=generated.provider,
            providerMessage=f"{printful_note}{generated.message}".strip(),
        )
