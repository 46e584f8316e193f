from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pod_pipeline.db.base import Base
from pod_pipeline.db.enums import AssetKindEnum, AssetRoleEnum, DesignStatusEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class Design(Base):
    __tablename__ = "designs"

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    product_type: Mapped[str] = mapped_column(String(length=50), nullable=False, default="mug")
    image_shape: Mapped[str] = mapped_column(String(length=20), nullable=False, default="square")
    status: Mapped[DesignStatusEnum] = mapped_column(
        Enum(DesignStatusEnum, native_enum=False, length=32),
        nullable=False,
        default=DesignStatusEnum.preview_ready,
        index=True,
    )
    artwork_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_asset_id: Mapped[Optional[str]] = mapped_column(String(length=36), nullable=True)
    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    publish_immediately: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    preview_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_artwork_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mockup_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transparent_artwork_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    shopify_product_id: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    admin_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    listing_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    listing_description_html: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    listing_description_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    listing_tags: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    last_publish_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Owner of the current finalizing claim; cleared when the claim ends.
    claim_token: Mapped[Optional[str]] = mapped_column(String(length=36), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class DesignAsset(Base):
    __tablename__ = "design_assets"

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid)
    design_id: Mapped[str] = mapped_column(String(length=36), nullable=False, index=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    kind: Mapped[AssetKindEnum] = mapped_column(Enum(AssetKindEnum, native_enum=False, length=32), nullable=False)
    role: Mapped[AssetRoleEnum] = mapped_column(Enum(AssetRoleEnum, native_enum=False, length=16), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PublishedProduct(Base):
    __tablename__ = "published_products"

    design_id: Mapped[str] = mapped_column(String(length=36), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    shopify_product_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    admin_url: Mapped[str] = mapped_column(Text, nullable=False)
    publish_immediately: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ShopSettings(Base):
    __tablename__ = "shop_settings"

    shop_domain: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    shopify_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    openai_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kie_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    printful_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
