from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from pod_pipeline.config import settings
from pod_pipeline.db.repositories import ShopSettingsRepository
from pod_pipeline.retry import retry_with_backoff
from pod_pipeline.schemas import PublishResult
from pod_pipeline.services.asset_storage import ImageLoadError, ImageStore, is_remote_url

logger = logging.getLogger(__name__)

PRODUCT_CREATE_MUTATION = """
mutation productCreate($product: ProductCreateInput!) {
    productCreate(product: $product) {
        product {
            id
            handle
        }
        userErrors {
            field
            message
        }
    }
}
"""


class ShopifyPublishError(RuntimeError):
    def __init__(self, *, message: str, status_code: int | None = 502) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.is_network_error = status_code is None


def shop_subdomain(shop_domain: str) -> str:
    return shop_domain.split(".")[0]


def products_admin_url(shop_domain: str, product_id: str | None = None) -> str:
    base = f"https://admin.shopify.com/store/{shop_subdomain(shop_domain)}/products"
    if not product_id:
        return base
    return f"{base}/{numeric_product_id(product_id)}"


def numeric_product_id(product_id: str) -> str:
    return str(product_id).rstrip("/").split("/")[-1]


def mock_product_id(shop_domain: str, title: str, image_refs: list[str]) -> str:
    digest = hashlib.sha1("|".join([shop_domain, title, *image_refs]).encode("utf-8")).hexdigest()
    return f"gid://shopify/Product/mock-{digest[:16]}"


class ShopifyAdminClient:
    def __init__(
        self,
        *,
        shop_domain: str,
        access_token: str,
        api_version: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.shop_domain = shop_domain
        self._access_token = access_token
        self._api_version = api_version or settings.SHOPIFY_ADMIN_API_VERSION
        self._timeout = timeout or settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS
        self._max_retries = settings.PUBLISH_MAX_RETRIES if max_retries is None else max_retries
        self._sleep = sleep

    @property
    def _admin_base(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self._api_version}"

    async def create_product(self, *, title: str, description_html: str, tags: list[str], active: bool) -> str:
        product_input: dict[str, Any] = {
            "title": title,
            "descriptionHtml": description_html,
            "status": "ACTIVE" if active else "DRAFT",
        }
        if tags:
            product_input["tags"] = tags
        data = await self._admin_graphql({"query": PRODUCT_CREATE_MUTATION, "variables": {"product": product_input}})
        create_data = data.get("productCreate") or {}
        user_errors = create_data.get("userErrors") or []
        if user_errors:
            messages = "; ".join(
                str(error.get("message")) if isinstance(error, dict) else str(error) for error in user_errors
            )
            raise ShopifyPublishError(message=f"productCreate failed: {messages}", status_code=422)
        product = create_data.get("product") or {}
        product_id = product.get("id")
        if not isinstance(product_id, str) or not product_id:
            raise ShopifyPublishError(message="productCreate response is missing product.id")
        return product_id

    async def create_product_rest(
        self,
        *,
        title: str,
        description_html: str,
        tags: list[str],
        active: bool,
        images: list[dict[str, Any]],
    ) -> str:
        body = {
            "product": {
                "title": title,
                "body_html": description_html,
                "tags": ", ".join(tags),
                "status": "active" if active else "draft",
                "images": images,
            }
        }
        response = await self._request_json("POST", f"{self._admin_base}/products.json", body)
        product = response.get("product") or {}
        gid = product.get("admin_graphql_api_id")
        if isinstance(gid, str) and gid:
            return gid
        raw_id = product.get("id")
        if raw_id is None:
            raise ShopifyPublishError(message="products.json response is missing product.id")
        return f"gid://shopify/Product/{raw_id}"

    async def attach_image(self, *, product_id: str, image: dict[str, Any]) -> None:
        url = f"{self._admin_base}/products/{numeric_product_id(product_id)}/images.json"
        await self._request_json("POST", url, {"image": image})

    async def _admin_graphql(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request_json("POST", f"{self._admin_base}/graphql.json", payload)
        errors = response.get("errors")
        if errors:
            raise ShopifyPublishError(message=f"Admin GraphQL errors: {errors}", status_code=400)
        data = response.get("data")
        if not isinstance(data, dict):
            raise ShopifyPublishError(message="Admin GraphQL response is missing data")
        return data

    async def _request_json(self, method: str, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        async def attempt(_: int) -> dict[str, Any]:
            return await self._send_json(method, url, payload)

        return await retry_with_backoff(
            attempt,
            max_retries=self._max_retries,
            label=f"shopify {method} {url.rsplit('/', 1)[-1]}",
            sleep=self._sleep,
        )

    async def _send_json(self, method: str, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "X-Shopify-Access-Token": self._access_token}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyPublishError(message=f"Network error while calling Shopify: {exc}", status_code=None) from exc

        if response.status_code >= 400:
            raise ShopifyPublishError(
                message=f"Shopify API call failed ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyPublishError(message="Shopify API returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ShopifyPublishError(message="Shopify API response must be a JSON object")
        return body


TokenResolver = Callable[[str], Optional[str]]


def global_token_resolver(_: str) -> Optional[str]:
    return settings.SHOPIFY_ADMIN_ACCESS_TOKEN


def shop_token_resolver(session: Session) -> TokenResolver:
    """Per-shop stored token first, then the global admin token."""
    repo = ShopSettingsRepository(session)

    def resolve(shop_domain: str) -> Optional[str]:
        record = repo.get(shop_domain)
        if record is not None and record.shopify_access_token:
            return record.shopify_access_token
        return settings.SHOPIFY_ADMIN_ACCESS_TOKEN

    return resolve


ClientFactory = Callable[[str, str], ShopifyAdminClient]


def _default_client_factory(shop_domain: str, access_token: str) -> ShopifyAdminClient:
    return ShopifyAdminClient(shop_domain=shop_domain, access_token=access_token)


class PublishOrchestrator:
    """
    Creates one Shopify product for a finished design.

    There is no duplicate detection here; callers must invoke `publish` at most
    once per design.
    """

    def __init__(
        self,
        *,
        image_store: ImageStore,
        token_resolver: TokenResolver = global_token_resolver,
        client_factory: ClientFactory = _default_client_factory,
    ) -> None:
        self._image_store = image_store
        self._token_resolver = token_resolver
        self._client_factory = client_factory

    async def publish(
        self,
        *,
        shop_domain: str,
        title: str,
        description_html: str,
        tags: list[str],
        image_refs: list[str],
        publish_immediately: bool,
    ) -> PublishResult:
        refs = [ref for ref in image_refs if ref]
        access_token = (self._token_resolver(shop_domain) or "").strip()
        if not access_token:
            product_id = mock_product_id(shop_domain, title, refs)
            logger.info("shopify_publish.mock", extra={"shop_domain": shop_domain, "product_id": product_id})
            return PublishResult(productId=product_id, adminUrl=products_admin_url(shop_domain), mock=True)

        client = self._client_factory(shop_domain, access_token)
        images, image_errors = await self._image_payloads(refs)

        try:
            product_id = await client.create_product(
                title=title, description_html=description_html, tags=tags, active=publish_immediately
            )
        except Exception as exc:
            logger.warning(
                "shopify_publish.modern_failed",
                extra={"shop_domain": shop_domain, "status_code": getattr(exc, "status_code", None), "error": str(exc)},
            )
            product_id = await client.create_product_rest(
                title=title,
                description_html=description_html,
                tags=tags,
                active=publish_immediately,
                images=images,
            )
            return PublishResult(
                productId=product_id,
                adminUrl=products_admin_url(shop_domain, product_id),
                imageErrors=image_errors,
            )

        for index, image in enumerate(images):
            try:
                await client.attach_image(product_id=product_id, image=image)
            except ShopifyPublishError as exc:
                logger.warning(
                    "shopify_publish.image_attach_failed",
                    extra={"shop_domain": shop_domain, "product_id": product_id, "index": index, "error": str(exc)},
                )
                image_errors.append(f"image {index}: {exc}")

        return PublishResult(
            productId=product_id,
            adminUrl=products_admin_url(shop_domain, product_id),
            imageErrors=image_errors,
        )

    async def _image_payloads(self, refs: list[str]) -> tuple[list[dict[str, Any]], list[str]]:
        images: list[dict[str, Any]] = []
        errors: list[str] = []
        for index, ref in enumerate(refs):
            if is_remote_url(ref):
                images.append({"src": ref})
                continue
            try:
                image = await self._image_store.load(ref)
            except ImageLoadError as exc:
                errors.append(f"image {index}: {exc}")
                continue
            images.append(
                {"attachment": base64.b64encode(image.content).decode("ascii"), "filename": image.filename}
            )
        return images, errors
