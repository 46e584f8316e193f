from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from pod_pipeline.config import settings
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.polling import (
    AsyncJobPoller,
    JobState,
    JobStatus,
    PollOutcomeStatus,
    SubmittedJob,
    deadline_event,
)
from pod_pipeline.services.asset_storage import ImageLoadError, ImageStore, is_data_uri

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrintfulProduct:
    product_id: int
    placement: str
    label: str


PRODUCT_MAP: dict[str, PrintfulProduct] = {
    "tshirt": PrintfulProduct(71, "front", "Unisex Staple T-Shirt (Bella+Canvas 3001)"),
    "hoodie": PrintfulProduct(146, "front", "Unisex Heavy Blend Hoodie (Gildan 18500)"),
    "sweatshirt": PrintfulProduct(281, "front", "Unisex Premium Sweatshirt (Cotton Heritage M2480)"),
    "mug": PrintfulProduct(19, "front", "White Glossy Mug"),
    "poster": PrintfulProduct(1, "default", "Enhanced Matte Paper Poster"),
    "canvasprint": PrintfulProduct(3, "default", "Canvas Print"),
    "pillow": PrintfulProduct(83, "front", "All-Over Print Pillow"),
    "totebag": PrintfulProduct(297, "front", "AOP Tote Bag"),
}

CATEGORY_LABELS = {
    "T-SHIRT": "T-Shirts",
    "CUT-SEW": "Cut & Sew",
    "EMBROIDERY": "Embroidery",
    "SUBLIMATION": "Sublimation",
    "POSTCARD": "Postcards",
    "DECOR": "Home Decor",
    "PHONE-CASE": "Phone Cases",
    "DRINKWARE": "Drinkware",
    "SHOES": "Shoes",
    "DTFILM": "DTFilm",
    "KNITWEAR": "Knitwear",
    "STICKER": "Stickers",
    "MUG": "Mugs",
    "FRAMED-POSTER": "Framed Posters",
    "DIRECT-TO-FABRIC": "Fabric",
    "COSMETICS": "Cosmetics",
    "CANVAS": "Canvas",
    "POSTER": "Posters",
    "PUZZLE": "Puzzles",
    "CANDLE": "Candles",
    "EMBROIDERY-PATCH": "Patches",
}

PRINT_AREA = {"area_width": 1800, "area_height": 2400, "width": 1800, "height": 2400, "top": 0, "left": 0}


class PrintfulApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.is_network_error = status_code is None


@dataclass
class MockupRenderResult:
    mockup_urls: list[str]
    provider: str
    message: str

    @property
    def ok(self) -> bool:
        return self.provider == "printful" and bool(self.mockup_urls)


@dataclass
class MockupTaskRequest:
    product: PrintfulProduct
    variant_id: int
    placement: str
    image_url: str


def resolve_product(category: str, catalog_product_id: int | str | None = None) -> Optional[PrintfulProduct]:
    if catalog_product_id:
        return PrintfulProduct(int(catalog_product_id), "front", f"Printful #{catalog_product_id}")
    return PRODUCT_MAP.get((category or "").strip().lower())


def pick_placement(product: PrintfulProduct, printfiles_result: dict[str, Any]) -> str:
    printfiles = printfiles_result.get("printfiles") or []
    if not printfiles:
        return product.placement
    if any(isinstance(item, dict) and item.get("printfile_id") for item in printfiles):
        return product.placement
    first = printfiles[0] if isinstance(printfiles[0], dict) else {}
    return first.get("type") or "default"


def collect_mockup_urls(result: dict[str, Any]) -> list[str]:
    urls: list[str] = []
    for mockup in result.get("mockups") or []:
        if not isinstance(mockup, dict):
            continue
        for extra in mockup.get("extra") or []:
            if isinstance(extra, dict) and extra.get("url"):
                urls.append(extra["url"])
        if mockup.get("mockup_url"):
            urls.append(mockup["mockup_url"])
    return urls


def parse_task_status(payload: dict[str, Any]) -> JobStatus:
    result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
    status = result.get("status")
    if status == "completed":
        urls = collect_mockup_urls(result)
        if not urls:
            return JobStatus(state=JobState.generate_failed, error_message="task completed without images")
        return JobStatus(state=JobState.succeeded, result_urls=urls)
    if status == "failed":
        return JobStatus(state=JobState.generate_failed, error_message=str(result.get("error") or "Unknown error"))
    return JobStatus(state=JobState.pending)


@dataclass
class CatalogCache:
    ttl_seconds: float = 3600.0
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, tuple[float, dict[str, Any]]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or self.clock() - entry[0] >= self.ttl_seconds:
            return None
        return entry[1]

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = (self.clock(), value)


catalog_cache = CatalogCache(ttl_seconds=settings.PRINTFUL_CATALOG_CACHE_SECONDS)


class PrintfulClient:
    def __init__(self, *, api_key: str, base_url: str | None = None, timeout: float | None = None) -> None:
        self._api_key = api_key
        self.base_url = (base_url or settings.PRINTFUL_BASE_URL).rstrip("/")
        self._timeout = timeout or settings.PROVIDER_REQUEST_TIMEOUT_SECONDS

    async def get_printfiles(self, product_id: int) -> dict[str, Any]:
        payload = await self._request_json("GET", f"/mockup-generator/printfiles/{product_id}")
        return payload.get("result") if isinstance(payload.get("result"), dict) else {}

    async def create_task(self, request: MockupTaskRequest) -> str:
        body = {
            "variant_ids": [request.variant_id],
            "files": [{"placement": request.placement, "image_url": request.image_url, "position": dict(PRINT_AREA)}],
        }
        payload = await self._request_json(
            "POST", f"/mockup-generator/create-task/{request.product.product_id}", json=body
        )
        result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
        task_key = result.get("task_key")
        if not isinstance(task_key, str) or not task_key:
            raise PrintfulApiError(message="Printful did not return a task key.", status_code=502)
        return task_key

    async def get_task(self, task_key: str) -> dict[str, Any]:
        return await self._request_json("GET", "/mockup-generator/task", params={"task_key": task_key})

    async def upload_file(self, content: bytes, *, filename: str, content_type: str) -> str:
        payload = await self._request_json(
            "POST",
            "/files",
            files={"file": (filename, content, content_type)},
            data={"type": "default"},
        )
        result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
        url = result.get("preview_url") or result.get("url")
        if not isinstance(url, str) or not url:
            raise PrintfulApiError(message="Printful file upload returned no URL", status_code=502)
        return url

    async def list_products(self) -> list[dict[str, Any]]:
        payload = await self._request_json("GET", "/products")
        result = payload.get("result")
        return result if isinstance(result, list) else []

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise PrintfulApiError(message=f"Network error while calling Printful: {exc}") from exc

        if response.status_code >= 400:
            raise PrintfulApiError(
                message=f"Printful request failed ({response.status_code}): {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise PrintfulApiError(message="Printful returned invalid JSON", status_code=502) from exc
        if not isinstance(body, dict):
            raise PrintfulApiError(message="Printful response must be a JSON object", status_code=502)
        return body


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return str(response.status_code)


class PrintfulMockupBackend:
    """JobBackend over the mockup-generator task endpoints."""

    def __init__(self, client: PrintfulClient) -> None:
        self._client = client

    async def submit(self, request: MockupTaskRequest) -> SubmittedJob:
        return SubmittedJob(job_id=await self._client.create_task(request))

    async def fetch_status(self, job_id: str) -> JobStatus:
        try:
            payload = await self._client.get_task(job_id)
        except PrintfulApiError as exc:
            # A failed status read is retried on the next poll.
            logger.warning("printful.task_status_failed", extra={"task_key": job_id, "error": str(exc)})
            return JobStatus(state=JobState.pending)
        return parse_task_status(payload)


class PrintfulMockupProvider:
    name = "printful"

    def __init__(
        self,
        *,
        api_key: str | None,
        image_store: ImageStore,
        client: PrintfulClient | None = None,
        poller: AsyncJobPoller | None = None,
        usage: UsageRecorder | None = None,
        cache: CatalogCache | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._image_store = image_store
        self._client = client or (PrintfulClient(api_key=self._api_key) if self._api_key else None)
        self._poller = poller or AsyncJobPoller()
        self._usage = usage or NullUsageRecorder()
        self._cache = cache or catalog_cache

    @property
    def configured(self) -> bool:
        return self._client is not None

    def is_supported(self, category: str) -> bool:
        return resolve_product(category) is not None

    async def render_mockup(
        self,
        artwork_ref: str,
        category: str,
        *,
        catalog_product_id: int | str | None = None,
        poll_interval: float | None = None,
        deadline: float | None = None,
        cancel_event=None,
    ) -> MockupRenderResult:
        if self._client is None:
            return MockupRenderResult([], "printful-no-key", "Printful API key is not configured.")

        product = resolve_product(category, catalog_product_id)
        if product is None:
            return MockupRenderResult(
                [], "printful-unsupported", f'Product type "{category}" is not mapped to a Printful product.'
            )

        image_url = await self._hosted_artwork_url(artwork_ref)
        if image_url is None:
            return MockupRenderResult([], "printful-upload-failed", "Failed to prepare artwork image for Printful.")

        interval = poll_interval or settings.MOCKUP_POLL_INTERVAL_SECONDS
        wait = deadline or settings.MOCKUP_POLL_DEADLINE_SECONDS
        try:
            with deadline_event(wait, cancel_event) as cancel:
                printfiles = await self._client.get_printfiles(product.product_id)
                variant_ids = printfiles.get("variant_ids") or []
                if not variant_ids:
                    return MockupRenderResult(
                        [], "printful-no-variant", "No variants available for this Printful product."
                    )

                logger.info(
                    "printful.create_task",
                    extra={"product_id": product.product_id, "variant_id": variant_ids[0]},
                )
                outcome = await self._poller.run(
                    PrintfulMockupBackend(self._client),
                    MockupTaskRequest(
                        product=product,
                        variant_id=int(variant_ids[0]),
                        placement=pick_placement(product, printfiles),
                        image_url=image_url,
                    ),
                    interval=interval,
                    deadline=wait,
                    cancel_event=cancel,
                )
        except PrintfulApiError as exc:
            logger.warning("printful.request_failed", extra={"status_code": exc.status_code, "error": str(exc)})
            return MockupRenderResult([], "printful-error", str(exc))

        if outcome.ok:
            self._usage.record_call("printful", "mockup-generator", "mockup")
            return MockupRenderResult(
                outcome.result_urls,
                "printful",
                f"Printful mockup generated: {product.label}. {len(outcome.result_urls)} image(s).",
            )
        if outcome.status == PollOutcomeStatus.failed:
            return MockupRenderResult([], "printful-failed", f"Printful mockup generation failed: {outcome.error_message}")
        return MockupRenderResult([], "printful-timeout", f"Printful mockup generation timed out after {wait:g}s.")

    async def _hosted_artwork_url(self, artwork_ref: str) -> str | None:
        if not (is_data_uri(artwork_ref) or self._image_store.is_local_ref(artwork_ref)):
            return artwork_ref
        try:
            image = await self._image_store.load(artwork_ref)
            return await self._client.upload_file(
                image.content,
                filename=f"artwork_{int(time.time())}.{'png' if 'png' in image.content_type else 'jpg'}",
                content_type=image.content_type,
            )
        except (ImageLoadError, PrintfulApiError) as exc:
            logger.warning("printful.upload_failed", extra={"error": str(exc)})
            return None

    async def get_product_catalog(self) -> dict[str, Any]:
        if self._client is None:
            return {"products": [], "categories": [], "source": "no-key"}

        cached = self._cache.get(self._api_key)
        if cached is not None:
            return {**cached, "source": "cache"}

        try:
            raw_products = await self._client.list_products()
        except PrintfulApiError as exc:
            logger.warning("printful.catalog_failed", extra={"error": str(exc)})
            return {"products": [], "categories": [], "source": "error"}

        categories: set[str] = set()
        products = []
        for raw in raw_products:
            if not isinstance(raw, dict):
                continue
            category = CATEGORY_LABELS.get(raw.get("type"), raw.get("type"))
            if category:
                categories.add(category)
            products.append(
                {
                    "id": raw.get("id"),
                    "title": raw.get("title"),
                    "type": raw.get("type"),
                    "category": category,
                    "image": raw.get("image"),
                    "model": raw.get("model"),
                }
            )
        catalog = {"products": products, "categories": sorted(categories)}
        self._cache.put(self._api_key, catalog)
        logger.info("printful.catalog_fetched", extra={"products": len(products), "categories": len(categories)})
        return {**catalog, "source": "api"}
