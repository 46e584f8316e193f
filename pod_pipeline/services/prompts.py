from __future__ import annotations

import re

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

PROMPT_MAX_LENGTH = 5000
PRODUCT_TYPE_MAX_LENGTH = 50
SHAPE_MAX_LENGTH = 20
AMENDMENT_MAX_LENGTH = 2000


def sanitize_input(value: object, max_length: int = PROMPT_MAX_LENGTH) -> str:
    """Strip markup and control characters from merchant text, then trim and cap its length."""
    if value is None:
        return ""
    text = _CONTROL_RE.sub("", _TAG_RE.sub("", str(value))).strip()
    return text[:max_length]


def build_artwork_prompt(concept: str, amendment: str = "") -> str:
    amendment_text = f" with revision: {amendment.strip()}" if amendment.strip() else ""
    return (
        "Create a clean, isolated artwork design for print-on-demand. "
        f"The design concept: {concept}{amendment_text}. "
        "Render the artwork on a SOLID WHITE background. The background must be pure white (#FFFFFF) "
        "with absolutely no transparency. No product, no mockup, no surface, just the standalone "
        "graphic/illustration on a flat white background, ready to be printed."
    )


def build_revision_prompt(amendment: str) -> str:
    return (
        "Edit the provided artwork design. Keep the same overall composition, subject, and visual style. "
        f"Apply only this change: {amendment.strip()}"
    )


def build_mockup_prompt(product_type: str) -> str:
    return "\n".join(
        [
            f"Create a clean, photorealistic {product_type} product mockup.",
            f"The provided reference image is the EXACT artwork to be printed on the {product_type}.",
            "CRITICAL RULES:",
            "- Reproduce the reference artwork EXACTLY as-is on the product: same colors, same composition, same details.",
            "- Do NOT add any drop shadows, glows, outlines, or effects to the artwork.",
            '- Do NOT modify, reinterpret, or "improve" the artwork in any way.',
            "- Use a clean, plain white or very light neutral background.",
            "- Soft, even studio lighting with no harsh shadows on the product.",
            f"- The {product_type} should be shown straight-on, centered, with the artwork clearly visible.",
            "- No extra props, decorations, or text outside the artwork itself.",
        ]
    )


def default_lifestyle_prompts(product_type: str) -> list[str]:
    keep = "Keep the product design exactly as shown in the reference image."
    return [
        f"Place this exact {product_type} product on a kitchen table in a bright room with natural daylight. {keep}",
        f"Show this exact {product_type} product in a clean, minimal flat-lay arrangement on a light surface. {keep}",
        f"Show a person holding this exact {product_type} product in a lifestyle setting. {keep}",
    ]


def normalize_scene_prompts(prompts: list[str] | None, product_type: str) -> list[str]:
    cleaned = [str(item).strip() for item in (prompts or []) if item is not None and str(item).strip()]
    return cleaned or default_lifestyle_prompts(product_type)
