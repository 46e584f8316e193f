"""
Design lifecycle orchestration: preview, revise, mockup, finalize, retry-publish.

`finalize` runs its steps in a fixed order. Each step is guarded and degrades
to placeholder or fallback content. Only an error raised outside a guarded step
aborts the call, and in that case the design's finalize claim is released.
The claim is refreshed between steps; a run whose claim was taken over stops
before publishing.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from pod_pipeline.config import settings
from pod_pipeline.db.enums import AssetKindEnum, AssetRoleEnum, DesignStatusEnum
from pod_pipeline.db.models import Design, DesignAsset
from pod_pipeline.db.repositories import (
    DesignsRepository,
    PublishedProductsRepository,
    ShopSettingsRepository,
)
from pod_pipeline.errors import (
    DesignNotFoundError,
    DesignStateError,
    FinalizeInProgressError,
    InvalidRequestError,
    RevisionTimeoutError,
)
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.schemas import (
    AssetOut,
    DesignOut,
    DesignPreviewRequest,
    DesignPreviewResult,
    FinalizeRequest,
    FinalizeResult,
    ListingCopyOut,
    ListingCopyResult,
    MockupRequest,
    MockupResult,
    ProductImageDescription,
    ProviderTrail,
    PublishResult,
    RetryPublishResult,
    ReviseDesignRequest,
    RevisionResult,
)
from pod_pipeline.services.asset_storage import AssetStorageService, ImageStore
from pod_pipeline.services.design_state import FINALIZE_FROM_STATUSES, DesignStateMachine
from pod_pipeline.services.generation import PodPipelineService, ProviderKeys, placeholder_scenes, summarize_scenes
from pod_pipeline.services.image_waterfall import FALLBACK_TIMEOUT, is_live_provider
from pod_pipeline.services.listing_copy import fallback_copy
from pod_pipeline.services.prompts import build_artwork_prompt, build_revision_prompt, normalize_scene_prompts
from pod_pipeline.services.shopify_publish import PublishOrchestrator, shop_token_resolver

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MOCK_PUBLISH_ERROR = "No Shopify access token is configured; the product was not created."
RAW_ARTWORK_NOTE = "Raw artwork (generated before product mockup)"
EXTRACTED_ARTWORK_NOTE = "Isolated artwork with transparent background"
_DROP_REFERENCE_MARKERS = ("size exceeds limit", "timed out")


def _validate(model: type[ModelT], payload: Any) -> ModelT:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise InvalidRequestError(message=str(exc)) from exc


def design_to_out(design: Design) -> DesignOut:
    return DesignOut(
        id=design.id,
        shopDomain=design.shop_domain,
        prompt=design.prompt,
        productType=design.product_type,
        imageShape=design.image_shape,
        status=design.status.value,
        artworkPrompt=design.artwork_prompt,
        currentAssetId=design.current_asset_id,
        revisionCount=design.revision_count,
        publishImmediately=design.publish_immediately,
        previewImageUrl=design.preview_image_url,
        rawArtworkUrl=design.raw_artwork_url,
        mockupImageUrl=design.mockup_image_url,
        shopifyProductId=design.shopify_product_id,
        adminUrl=design.admin_url,
        createdAt=design.created_at,
        updatedAt=design.updated_at,
        finalizedAt=design.finalized_at,
    )


def asset_to_out(asset: DesignAsset) -> AssetOut:
    return AssetOut(
        id=asset.id,
        designId=asset.design_id,
        kind=asset.kind.value,
        role=asset.role.value,
        url=asset.url,
        prompt=asset.prompt,
        provider=asset.provider,
        createdAt=asset.created_at,
    )


PipelineFactory = Callable[[str], PodPipelineService]


class PipelineCoordinator:
    def __init__(
        self,
        session: Session,
        *,
        image_store: ImageStore | None = None,
        usage: UsageRecorder | None = None,
        pipeline_factory: PipelineFactory | None = None,
        publisher: PublishOrchestrator | None = None,
    ) -> None:
        self.session = session
        self.image_store = image_store or ImageStore()
        self.usage = usage or NullUsageRecorder()
        self.designs = DesignsRepository(session)
        self.published_products = PublishedProductsRepository(session)
        self.shop_settings = ShopSettingsRepository(session)
        self.storage = AssetStorageService(session)
        self.state = DesignStateMachine(session)
        self._pipeline_factory = pipeline_factory or self._default_pipeline
        self.publisher = publisher or PublishOrchestrator(
            image_store=self.image_store, token_resolver=shop_token_resolver(session)
        )

    def _default_pipeline(self, shop_domain: str) -> PodPipelineService:
        keys = ProviderKeys.resolve(self.shop_settings.get(shop_domain))
        return PodPipelineService(keys=keys, image_store=self.image_store, usage=self.usage)

    def pipeline_for(self, shop_domain: str) -> PodPipelineService:
        return self._pipeline_factory(shop_domain)

    def _get_design(self, shop_domain: str, design_id: str) -> Design:
        design = self.designs.get(shop_domain, design_id)
        if design is None:
            raise DesignNotFoundError(design_id=design_id)
        return design

    async def _persist_if_live(self, url: str, provider: str) -> str:
        if not is_live_provider(provider):
            return url
        return await self.image_store.persist_remote(url)

    async def create_design_preview(self, shop_domain: str, payload: Any) -> DesignPreviewResult:
        request = _validate(DesignPreviewRequest, payload)
        pipeline = self.pipeline_for(shop_domain)
        artwork_prompt = build_artwork_prompt(request.prompt)

        image = await pipeline.generate_design_image(
            artwork_prompt,
            shape=request.imageShape,
            deadline=settings.DESIGN_POLL_DEADLINE_SECONDS,
            poll_interval=settings.DESIGN_POLL_INTERVAL_SECONDS,
        )
        image_url = await self._persist_if_live(image.imageUrl, image.provider)

        design = self.designs.create(
            shop_domain,
            request.prompt,
            product_type=request.productType,
            image_shape=request.imageShape,
            status=DesignStatusEnum.preview_ready,
            artwork_prompt=artwork_prompt,
            revision_count=0,
            publish_immediately=request.publishImmediately,
            preview_image_url=image_url,
            raw_artwork_url=image_url,
            created_by=request.createdBy,
        )
        asset = self.storage.save_asset(
            design_id=design.id,
            shop_domain=shop_domain,
            kind=AssetKindEnum.artwork_raw,
            role=AssetRoleEnum.base,
            url=image_url,
            prompt=artwork_prompt,
            provider=image.provider,
        )
        design = self.designs.update(design, current_asset_id=asset.id)
        logger.info(
            "design.preview_created",
            extra={"design_id": design.id, "shop_domain": shop_domain, "provider": image.provider},
        )
        return DesignPreviewResult(
            design=design_to_out(design),
            imageUrl=image_url,
            provider=image.provider,
            providerMessage=image.providerMessage,
        )

    async def revise_design(self, shop_domain: str, design_id: str, payload: Any) -> RevisionResult:
        request = _validate(ReviseDesignRequest, payload)
        design = self._get_design(shop_domain, design_id)
        self.state.ensure_revisable(design)
        pipeline = self.pipeline_for(shop_domain)

        revision_prompt = build_revision_prompt(request.amendment)
        reference = design.raw_artwork_url or design.preview_image_url
        image = await pipeline.generate_design_image(
            revision_prompt,
            reference_image=reference,
            shape=design.image_shape,
            deadline=settings.REVISION_POLL_DEADLINE_SECONDS,
            poll_interval=settings.REVISION_POLL_INTERVAL_SECONDS,
        )
        if not is_live_provider(image.provider):
            message = image.providerMessage.lower()
            drop_reference = image.provider == FALLBACK_TIMEOUT or any(
                marker in message for marker in _DROP_REFERENCE_MARKERS
            )
            logger.info(
                "design.revision_retry",
                extra={"design_id": design.id, "provider": image.provider, "drop_reference": drop_reference},
            )
            image = await pipeline.generate_design_image(
                revision_prompt,
                reference_image=None if drop_reference else reference,
                shape=design.image_shape,
                deadline=settings.REVISION_RETRY_POLL_DEADLINE_SECONDS,
                poll_interval=settings.REVISION_RETRY_POLL_INTERVAL_SECONDS,
            )
        if not is_live_provider(image.provider):
            raise RevisionTimeoutError(message=f"Revision did not produce a new image: {image.providerMessage}")

        image_url = await self._persist_if_live(image.imageUrl, image.provider)
        artwork_prompt = build_artwork_prompt(design.prompt, request.amendment)
        asset = self.storage.save_asset(
            design_id=design.id,
            shop_domain=shop_domain,
            kind=AssetKindEnum.artwork_raw,
            role=AssetRoleEnum.revision,
            url=image_url,
            prompt=artwork_prompt,
            provider=image.provider,
        )
        self.state.mark_revised(
            design,
            artwork_prompt=artwork_prompt,
            preview_image_url=image_url,
            raw_artwork_url=image_url,
            mockup_image_url=None,
            current_asset_id=asset.id,
        )
        design = self._get_design(shop_domain, design_id)
        return RevisionResult(
            design=design_to_out(design),
            imageUrl=image_url,
            provider=image.provider,
            providerMessage=image.providerMessage,
        )

    async def generate_mockup(self, shop_domain: str, design_id: str, payload: Any = None) -> MockupResult:
        request = _validate(MockupRequest, payload)
        design = self._get_design(shop_domain, design_id)
        self.state.ensure_editable(design)
        artwork = design.raw_artwork_url or design.preview_image_url
        if not artwork:
            raise InvalidRequestError(message="Design has no artwork to render a mockup from")

        pipeline = self.pipeline_for(shop_domain)
        mockup = await pipeline.resolve_mockup(
            artwork,
            design.product_type,
            catalog_product_id=request.catalogProductId,
            shape=request.imageShape or design.image_shape,
        )
        mockup_url = await self._persist_if_live(mockup.mockupImageUrl, mockup.provider)
        self.storage.save_asset(
            design_id=design.id,
            shop_domain=shop_domain,
            kind=AssetKindEnum.mockup,
            role=AssetRoleEnum.final,
            url=mockup_url,
            prompt=design.artwork_prompt,
            provider=mockup.provider,
        )
        self.state.mark_mockup_ready(design, preview_image_url=mockup_url, mockup_image_url=mockup_url)
        design = self._get_design(shop_domain, design_id)
        return MockupResult(
            design=design_to_out(design),
            mockupImageUrl=mockup_url,
            mockupUrls=[mockup_url, *mockup.mockupUrls[1:]],
            provider=mockup.provider,
            providerMessage=mockup.providerMessage,
        )

    async def finalize(self, shop_domain: str, design_id: str, payload: Any = None) -> FinalizeResult:
        request = _validate(FinalizeRequest, payload)
        design = self._get_design(shop_domain, design_id)
        cached = self._cached_finalize_result(design)
        if cached is not None:
            return cached

        prior_status = design.status if design.status in FINALIZE_FROM_STATUSES else None
        claim = self.state.claim_for_finalize(design.id)
        if claim is None:
            design = self._get_design(shop_domain, design_id)
            cached = self._cached_finalize_result(design)
            if cached is not None:
                return cached
            raise FinalizeInProgressError(design_id=design_id)

        if prior_status is None:
            prior_status = DesignStatusEnum.mockup_ready if design.mockup_image_url else DesignStatusEnum.preview_ready
        try:
            return await self._run_finalize(shop_domain, design_id, request, claim)
        except Exception:
            logger.exception("finalize.fatal", extra={"design_id": design_id, "shop_domain": shop_domain})
            self.state.release(design_id, prior_status, claim_token=claim)
            raise

    async def _run_finalize(
        self, shop_domain: str, design_id: str, request: FinalizeRequest, claim: str
    ) -> FinalizeResult:
        design = self._get_design(shop_domain, design_id)
        pipeline = self.pipeline_for(shop_domain)
        publish_immediately = (
            request.publishImmediately if request.publishImmediately is not None else design.publish_immediately
        )
        scene_prompts = normalize_scene_prompts(request.lifestylePrompts, design.product_type)
        reference = design.mockup_image_url or design.preview_image_url
        log_extra = {"design_id": design.id, "shop_domain": shop_domain}

        # 1. lifestyle scenes
        try:
            scenes = await pipeline.generate_lifestyle_scenes(
                scene_prompts, reference_image=reference, shape=design.image_shape
            )
        except Exception as exc:
            logger.exception("finalize.lifestyle_failed", extra=log_extra)
            scenes = placeholder_scenes(scene_prompts, f"Product image generation failed: {exc}")

        self.state.keep_claim(design_id, claim)

        # 2. alternate-provider sweep for scenes that ended on a placeholder
        try:
            scenes = await pipeline.sweep_unsatisfied_scenes(
                scene_prompts, scenes, reference_image=reference, shape=design.image_shape
            )
        except Exception:
            logger.exception("finalize.sweep_failed", extra=log_extra)
        lifestyle = summarize_scenes(scenes)
        lifestyle_images = list(lifestyle.imageUrls)

        # 3. copy remote results into the image store
        for index, scene in enumerate(scenes):
            try:
                lifestyle_images[index] = await self._persist_if_live(lifestyle_images[index], scene.provider)
            except Exception:
                logger.exception("finalize.persist_failed", extra={**log_extra, "index": index})

        self.state.keep_claim(design_id, claim)

        # 4. transparent artwork
        transparent_url = design.raw_artwork_url or None
        try:
            if transparent_url:
                note = RAW_ARTWORK_NOTE
            else:
                extraction = await pipeline.extract_artwork(design.preview_image_url)
                transparent_url = extraction.artworkUrl
                note = EXTRACTED_ARTWORK_NOTE
            if transparent_url:
                self.storage.save_asset(
                    design_id=design.id,
                    shop_domain=shop_domain,
                    kind=AssetKindEnum.artwork_transparent,
                    role=AssetRoleEnum.final,
                    url=transparent_url,
                    prompt=note,
                )
        except Exception:
            logger.exception("finalize.artwork_failed", extra=log_extra)

        self.state.keep_claim(design_id, claim)

        # 5. listing copy
        try:
            copy_result = await pipeline.generate_listing_copy(design.prompt, design.product_type)
        except Exception as exc:
            logger.exception("finalize.copy_failed", extra=log_extra)
            copy_result = ListingCopyResult(
                listingCopy=fallback_copy(design.prompt, design.product_type),
                provider="fallback-error",
                providerMessage=str(exc),
            )
        listing_copy = copy_result.listingCopy

        # 6. lifestyle assets
        for url, scene, prompt in zip(lifestyle_images, scenes, scene_prompts):
            try:
                self.storage.save_asset(
                    design_id=design.id,
                    shop_domain=shop_domain,
                    kind=AssetKindEnum.lifestyle,
                    role=AssetRoleEnum.final,
                    url=url,
                    prompt=prompt,
                    provider=scene.provider,
                )
            except Exception:
                logger.exception("finalize.asset_save_failed", extra=log_extra)

        self.state.keep_claim(design_id, claim)

        # 7. publish
        publish_result: Optional[PublishResult] = None
        publish_error: Optional[str] = None
        try:
            publish_result = await self.publisher.publish(
                shop_domain=shop_domain,
                title=listing_copy.title,
                description_html=listing_copy.descriptionHtml,
                tags=listing_copy.tags,
                image_refs=[ref for ref in [design.preview_image_url, *lifestyle_images] if ref],
                publish_immediately=publish_immediately,
            )
            if publish_result.mock:
                publish_error = MOCK_PUBLISH_ERROR
        except Exception as exc:
            logger.exception("finalize.publish_failed", extra=log_extra)
            publish_error = str(exc) or "Shopify publish failed"

        # 8. final state
        persisted = {
            "listing_title": listing_copy.title,
            "listing_description_html": listing_copy.descriptionHtml,
            "listing_description_text": listing_copy.descriptionText,
            "listing_tags": list(listing_copy.tags),
            "transparent_artwork_url": transparent_url,
        }
        if publish_result is not None and not publish_result.mock:
            self.state.mark_published(
                design,
                claim_token=claim,
                product_id=publish_result.productId,
                admin_url=publish_result.adminUrl,
                publish_immediately=publish_immediately,
                last_publish_error=None,
                **persisted,
            )
            status = DesignStatusEnum.published
        else:
            self.state.mark_finalized(
                design.id,
                claim_token=claim,
                shopify_product_id=publish_result.productId if publish_result else None,
                admin_url=publish_result.adminUrl if publish_result else None,
                publish_immediately=publish_immediately,
                last_publish_error=publish_error,
                **persisted,
            )
            status = DesignStatusEnum.finalized

        messages = [lifestyle.providerMessage]
        if publish_error:
            messages.append(f"Shopify publish skipped: {publish_error}. Use retry publish once Shopify is configured.")
        logger.info(
            "finalize.complete",
            extra={**log_extra, "status": status.value, "images": len(lifestyle_images)},
        )
        return FinalizeResult(
            designId=design.id,
            status=status.value,
            productId=publish_result.productId if publish_result else None,
            adminUrl=publish_result.adminUrl if publish_result else None,
            lifestyleImages=lifestyle_images,
            transparentArtworkUrl=transparent_url,
            publishError=publish_error,
            provider=ProviderTrail(
                lifestyleImages=lifestyle.provider,
                listingCopy=copy_result.provider,
                message=" | ".join(message for message in messages if message),
            ),
            listingCopy=listing_copy,
        )

    def _persisted_copy(self, design: Design) -> Optional[ListingCopyOut]:
        if not design.listing_title:
            return None
        return ListingCopyOut(
            title=design.listing_title,
            descriptionHtml=design.listing_description_html or "",
            descriptionText=design.listing_description_text or "",
            tags=list(design.listing_tags or []),
        )

    def _lifestyle_urls(self, design: Design) -> list[str]:
        assets = self.storage.list_design_assets(design.shop_domain, design.id, kind=AssetKindEnum.lifestyle)
        return [asset.url for asset in assets]

    def _cached_finalize_result(self, design: Design) -> Optional[FinalizeResult]:
        if design.status == DesignStatusEnum.published and design.shopify_product_id:
            message = "Design already published."
        elif design.status == DesignStatusEnum.finalized:
            message = "Design already finalized; retry publish to create the product."
        else:
            return None
        published = design.status == DesignStatusEnum.published
        return FinalizeResult(
            designId=design.id,
            status=design.status.value,
            productId=design.shopify_product_id,
            adminUrl=design.admin_url,
            lifestyleImages=self._lifestyle_urls(design),
            transparentArtworkUrl=design.transparent_artwork_url,
            publishError=None if published else design.last_publish_error,
            provider=ProviderTrail(lifestyleImages="cached", listingCopy="cached", message=message),
            listingCopy=self._persisted_copy(design),
            alreadyPublished=published,
        )

    async def retry_publish(
        self, shop_domain: str, design_id: str, publish_immediately: bool | None = None
    ) -> RetryPublishResult:
        design = self._get_design(shop_domain, design_id)
        if design.status == DesignStatusEnum.published and design.shopify_product_id:
            return self._already_published(design)
        if design.status == DesignStatusEnum.finalizing:
            raise FinalizeInProgressError(design_id=design_id)
        if design.status != DesignStatusEnum.finalized:
            raise DesignStateError(message="Design must be finalized before publishing can be retried")

        claim = self.state.claim_for_publish_retry(design.id)
        if claim is None:
            design = self._get_design(shop_domain, design_id)
            if design.status == DesignStatusEnum.published and design.shopify_product_id:
                return self._already_published(design)
            raise FinalizeInProgressError(design_id=design_id)

        try:
            return await self._run_retry_publish(design, publish_immediately, claim)
        except Exception:
            logger.exception("retry_publish.fatal", extra={"design_id": design_id, "shop_domain": shop_domain})
            self.state.release(design_id, DesignStatusEnum.finalized, claim_token=claim)
            raise

    async def _run_retry_publish(
        self, design: Design, publish_immediately: bool | None, claim: str
    ) -> RetryPublishResult:
        immediately = publish_immediately if publish_immediately is not None else design.publish_immediately
        listing_copy = self._persisted_copy(design)
        if listing_copy is None:
            copy_result = await self.pipeline_for(design.shop_domain).generate_listing_copy(
                design.prompt, design.product_type
            )
            listing_copy = copy_result.listingCopy

        image_refs = [ref for ref in [design.preview_image_url, *self._lifestyle_urls(design)] if ref]
        self.state.keep_claim(design.id, claim)
        try:
            result = await self.publisher.publish(
                shop_domain=design.shop_domain,
                title=listing_copy.title,
                description_html=listing_copy.descriptionHtml,
                tags=listing_copy.tags,
                image_refs=image_refs,
                publish_immediately=immediately,
            )
        except Exception as exc:
            logger.exception("retry_publish.failed", extra={"design_id": design.id})
            error = str(exc) or "Publish failed"
            self.state.release(design.id, DesignStatusEnum.finalized, claim_token=claim, last_publish_error=error)
            return RetryPublishResult(designId=design.id, status=DesignStatusEnum.finalized.value, publishError=error)

        if result.mock:
            self.state.release(
                design.id,
                DesignStatusEnum.finalized,
                claim_token=claim,
                shopify_product_id=result.productId,
                admin_url=result.adminUrl,
                last_publish_error=MOCK_PUBLISH_ERROR,
            )
            return RetryPublishResult(
                designId=design.id,
                status=DesignStatusEnum.finalized.value,
                productId=result.productId,
                adminUrl=result.adminUrl,
                publishError=MOCK_PUBLISH_ERROR,
            )

        self.state.mark_published(
            design,
            claim_token=claim,
            product_id=result.productId,
            admin_url=result.adminUrl,
            publish_immediately=immediately,
            last_publish_error=None,
        )
        return RetryPublishResult(
            designId=design.id,
            status=DesignStatusEnum.published.value,
            productId=result.productId,
            adminUrl=result.adminUrl,
        )

    def _already_published(self, design: Design) -> RetryPublishResult:
        return RetryPublishResult(
            designId=design.id,
            status=design.status.value,
            productId=design.shopify_product_id,
            adminUrl=design.admin_url,
            alreadyPublished=True,
        )

    async def publish(
        self,
        shop_domain: str,
        *,
        title: str,
        description_html: str,
        tags: list[str],
        image_refs: list[str],
        publish_immediately: bool,
    ) -> PublishResult:
        return await self.publisher.publish(
            shop_domain=shop_domain,
            title=title,
            description_html=description_html,
            tags=tags,
            image_refs=image_refs,
            publish_immediately=publish_immediately,
        )

    async def describe_product_image(self, shop_domain: str, image_base64: str) -> ProductImageDescription:
        return await self.pipeline_for(shop_domain).describe_product_image(image_base64)

    def list_designs(self, shop_domain: str) -> list[DesignOut]:
        return [design_to_out(design) for design in self.designs.list(shop_domain)]

    def list_design_assets(self, shop_domain: str, design_id: str) -> list[AssetOut]:
        design = self._get_design(shop_domain, design_id)
        return [asset_to_out(asset) for asset in self.storage.list_design_assets(shop_domain, design.id)]

    def delete_design(self, shop_domain: str, design_id: str) -> None:
        design = self._get_design(shop_domain, design_id)
        if design.status == DesignStatusEnum.finalizing:
            raise FinalizeInProgressError(design_id=design_id)
        self.storage.assets.delete_for_design(shop_domain, design.id)
        self.published_products.delete(design.id)
        self.designs.delete(shop_domain, design.id)
        logger.info("design.deleted", extra={"design_id": design_id, "shop_domain": shop_domain})

    def redact_shop(self, shop_domain: str) -> dict[str, int]:
        """Erase everything stored for a shop after a platform data-erasure request."""
        counts = {
            "assets": self.storage.assets.delete_for_shop(shop_domain),
            "publishedProducts": self.published_products.delete_for_shop(shop_domain),
            "designs": self.designs.delete_for_shop(shop_domain),
        }
        self.shop_settings.delete(shop_domain)
        logger.info("shop.redacted", extra={"shop_domain": shop_domain, **counts})
        return counts

    def save_shop_settings(self, shop_domain: str, **fields: Optional[str]) -> None:
        self.shop_settings.upsert(shop_domain, **fields)

    async def get_product_catalog(self, shop_domain: str) -> dict[str, Any]:
        return await self.pipeline_for(shop_domain).get_product_catalog()
