from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from pod_pipeline.services.prompts import (
    AMENDMENT_MAX_LENGTH,
    PRODUCT_TYPE_MAX_LENGTH,
    SHAPE_MAX_LENGTH,
    sanitize_input,
)
from pod_pipeline.shapes import normalize_shape


class DesignPreviewRequest(BaseModel):
    prompt: str
    productType: str = "mug"
    imageShape: str = "square"
    publishImmediately: bool = False
    createdBy: str | None = None

    @field_validator("prompt", mode="before")
    @classmethod
    def clean_prompt(cls, value: object) -> str:
        cleaned = sanitize_input(value)
        if not cleaned:
            raise ValueError("prompt is required")
        return cleaned

    @field_validator("productType", mode="before")
    @classmethod
    def clean_product_type(cls, value: object) -> str:
        return sanitize_input(value, PRODUCT_TYPE_MAX_LENGTH).lower() or "mug"

    @field_validator("imageShape", mode="before")
    @classmethod
    def clean_shape(cls, value: object) -> str:
        return normalize_shape(sanitize_input(value, SHAPE_MAX_LENGTH))


class ReviseDesignRequest(BaseModel):
    amendment: str

    @field_validator("amendment", mode="before")
    @classmethod
    def clean_amendment(cls, value: object) -> str:
        cleaned = sanitize_input(value, AMENDMENT_MAX_LENGTH)
        if not cleaned:
            raise ValueError("amendment is required")
        return cleaned


class MockupRequest(BaseModel):
    imageShape: str | None = None
    catalogProductId: int | None = Field(default=None, ge=1)


class FinalizeRequest(BaseModel):
    publishImmediately: bool | None = None
    lifestylePrompts: list[str] | None = None

    @field_validator("lifestylePrompts", mode="before")
    @classmethod
    def clean_prompts(cls, value: object) -> list[str] | None:
        if value is None:
            return None
        if not isinstance(value, list):
            raise ValueError("lifestylePrompts must be a list of strings")
        return [cleaned for cleaned in (sanitize_input(item) for item in value) if cleaned]


class ListingCopyOut(BaseModel):
    title: str
    descriptionHtml: str
    descriptionText: str
    tags: list[str]


class ImageResult(BaseModel):
    imageUrl: str
    provider: str
    providerMessage: str


class LifestyleImagesResult(BaseModel):
    imageUrls: list[str]
    providers: list[str]
    provider: str
    providerMessage: str


class ListingCopyResult(BaseModel):
    listingCopy: ListingCopyOut
    provider: str
    providerMessage: str


class ArtworkExtractionResult(BaseModel):
    artworkUrl: str | None
    provider: str
    providerMessage: str


class MockupImageResult(BaseModel):
    mockupImageUrl: str
    mockupUrls: list[str]
    provider: str
    providerMessage: str


class PublishResult(BaseModel):
    productId: str
    adminUrl: str
    mock: bool = False
    imageErrors: list[str] = Field(default_factory=list)


class DesignOut(BaseModel):
    id: str
    shopDomain: str
    prompt: str
    productType: str
    imageShape: str
    status: str
    artworkPrompt: Optional[str] = None
    currentAssetId: Optional[str] = None
    revisionCount: int
    publishImmediately: bool
    previewImageUrl: Optional[str] = None
    rawArtworkUrl: Optional[str] = None
    mockupImageUrl: Optional[str] = None
    shopifyProductId: Optional[str] = None
    adminUrl: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
    finalizedAt: Optional[datetime] = None


class AssetOut(BaseModel):
    id: str
    designId: str
    kind: str
    role: str
    url: str
    prompt: Optional[str] = None
    provider: Optional[str] = None
    createdAt: datetime


class DesignPreviewResult(BaseModel):
    design: DesignOut
    imageUrl: str
    provider: str
    providerMessage: str


class MockupResult(BaseModel):
    design: DesignOut
    mockupImageUrl: str
    mockupUrls: list[str]
    provider: str
    providerMessage: str


class RevisionResult(BaseModel):
    design: DesignOut
    imageUrl: str
    provider: str
    providerMessage: str


class ProviderTrail(BaseModel):
    lifestyleImages: str
    listingCopy: str
    message: str


class FinalizeResult(BaseModel):
    designId: str
    status: str
    productId: str | None = None
    adminUrl: str | None = None
    lifestyleImages: list[str] = Field(default_factory=list)
    transparentArtworkUrl: str | None = None
    publishError: str | None = None
    provider: ProviderTrail
    listingCopy: ListingCopyOut | None = None
    alreadyPublished: bool = False


class RetryPublishResult(BaseModel):
    designId: str
    status: str
    productId: str | None = None
    adminUrl: str | None = None
    publishError: str | None = None
    alreadyPublished: bool = False


class ProductImageDescription(BaseModel):
    description: str
