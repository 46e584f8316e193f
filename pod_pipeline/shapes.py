from __future__ import annotations

from pod_pipeline.db.enums import ImageShapeEnum

OPENAI_SIZES: dict[str, str] = {
    ImageShapeEnum.square.value: "1024x1024",
    ImageShapeEnum.portrait.value: "1024x1536",
    ImageShapeEnum.landscape.value: "1536x1024",
    ImageShapeEnum.tall_portrait.value: "1024x1536",
    ImageShapeEnum.wide_landscape.value: "1536x1024",
}

KIE_ASPECT_RATIOS: dict[str, str] = {
    ImageShapeEnum.square.value: "1:1",
    ImageShapeEnum.portrait.value: "3:4",
    ImageShapeEnum.landscape.value: "4:3",
    ImageShapeEnum.tall_portrait.value: "2:3",
    ImageShapeEnum.wide_landscape.value: "3:2",
}


def normalize_shape(shape: str | None) -> str:
    value = (shape or "").strip().lower()
    return value if value in OPENAI_SIZES else ImageShapeEnum.square.value


def openai_size(shape: str | None) -> str:
    return OPENAI_SIZES[normalize_shape(shape)]


def kie_aspect_ratio(shape: str | None) -> str:
    return KIE_ASPECT_RATIOS[normalize_shape(shape)]
