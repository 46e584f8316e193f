from __future__ import annotations

import json
import logging
from html import escape
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError, field_validator

from pod_pipeline.config import is_usable_key, settings
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.providers.openai_images import build_openai_client
from pod_pipeline.schemas import ListingCopyOut, ListingCopyResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You generate ecommerce listing copy for Shopify POD products. "
    "Return strict JSON with title, descriptionText, and tags (array of short lowercase strings)."
)
DESCRIPTION_SUFFIX = "Professionally generated POD design and lifestyle visuals."
TITLE_CONCEPT_LENGTH = 45


class _CopyPayload(BaseModel):
    title: str | None = None
    descriptionText: str | None = None
    tags: list[str] | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def clean_tags(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        if not isinstance(value, list):
            raise ValueError("tags must be a list")
        return [str(tag).strip() for tag in value if str(tag).strip()]


def default_tags(category: str) -> list[str]:
    return ["ai-generated", "pod", category or "product"]


def fallback_copy(concept: str, category: str) -> ListingCopyOut:
    """Deterministic copy built only from the concept and category."""
    concept = (concept or "").strip() or "Custom design"
    category = (category or "").strip() or "product"
    return ListingCopyOut(
        title=f"{category.upper()} - {concept[:TITLE_CONCEPT_LENGTH]}",
        descriptionHtml=f"<p>{escape(concept)}</p><p>{DESCRIPTION_SUFFIX}</p>",
        descriptionText=f"{concept}. {DESCRIPTION_SUFFIX}",
        tags=default_tags(category),
    )


class ListingCopyGenerator:
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
        self.model = model or settings.OPENAI_COPY_MODEL

    async def generate_copy(self, concept: str, category: str) -> ListingCopyResult:
        if self._client is None and not is_usable_key(self._api_key):
            return ListingCopyResult(
                listingCopy=fallback_copy(concept, category),
                provider="fallback-no-key",
                providerMessage="OpenAI API key is missing or invalid format.",
            )

        try:
            content = await self._request_copy(concept, category)
            copy = self._parse(content, concept, category)
        except (openai.OpenAIError, ValueError, ValidationError) as exc:
            logger.warning("listing_copy.fallback", extra={"error": str(exc)})
            return ListingCopyResult(
                listingCopy=fallback_copy(concept, category),
                provider="fallback-error",
                providerMessage=str(exc) or "OpenAI request failed.",
            )

        self._usage.record_call("openai", self.model, "chat")
        return ListingCopyResult(
            listingCopy=copy,
            provider="openai",
            providerMessage="Live OpenAI copy generation used.",
        )

    async def _request_copy(self, concept: str, category: str) -> str:
        client = self._client or build_openai_client(self._api_key or "")
        response = await client.chat.completions.create(
            model=self.model,
            temperature=0.7,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Create listing copy for productType={category} with concept: {concept}"},
            ],
        )
        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        if message is None:
            raise ValueError("Chat completion returned no message")
        return message.content or "{}"

    def _parse(self, content: str, concept: str, category: str) -> ListingCopyOut:
        payload = _CopyPayload.model_validate(json.loads(content))
        fallback = fallback_copy(concept, category)
        title = (payload.title or "").strip() or fallback.title
        description = (payload.descriptionText or "").strip() or fallback.descriptionText
        return ListingCopyOut(
            title=title,
            descriptionHtml=f"<p>{escape(description)}</p>",
            descriptionText=description,
            tags=payload.tags or default_tags(category),
        )
