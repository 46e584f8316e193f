from enum import Enum


class DesignStatusEnum(str, Enum):
    preview_ready = "preview_ready"
    mockup_ready = "mockup_ready"
    finalizing = "finalizing"
    finalized = "finalized"
    published = "published"


class AssetKindEnum(str, Enum):
    artwork_raw = "artwork_raw"
    mockup = "mockup"
    lifestyle = "lifestyle"
    artwork_transparent = "artwork_transparent"


class AssetRoleEnum(str, Enum):
    base = "base"
    revision = "revision"
    final = "final"


class ImageShapeEnum(str, Enum):
    square = "square"
    portrait = "portrait"
    landscape = "landscape"
    tall_portrait = "tall_portrait"
    wide_landscape = "wide_landscape"
