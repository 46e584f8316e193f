from __future__ import annotations

import asyncio
import base64

from pod_pipeline.metrics import ApiUsageTracker
from pod_pipeline.polling import AsyncJobPoller, JobState
from pod_pipeline.providers.printful import (
    CatalogCache,
    PrintfulApiError,
    PrintfulMockupProvider,
    collect_mockup_urls,
    parse_task_status,
    pick_placement,
    resolve_product,
)


async def _no_sleep(seconds: float) -> None:
    return None


class FakePrintfulClient:
    def __init__(self, *, task_results: list[dict] | None = None, variant_ids=(4011,)) -> None:
        self.task_results = task_results or [
            {"result": {"status": "completed", "mockups": [{"mockup_url": "https://files.printful.test/m1.png"}]}}
        ]
        self.variant_ids = list(variant_ids)
        self.created: list = []
        self.uploads: list[tuple[str, str]] = []
        self.product_calls = 0

    async def get_printfiles(self, product_id: int) -> dict:
        return {"variant_ids": self.variant_ids, "printfiles": [{"printfile_id": 1}]}

    async def create_task(self, request) -> str:
        self.created.append(request)
        return "task-key-1"

    async def get_task(self, task_key: str) -> dict:
        result = self.task_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def upload_file(self, content: bytes, *, filename: str, content_type: str) -> str:
        self.uploads.append((filename, content_type))
        return "https://files.printful.test/uploaded.png"

    async def list_products(self) -> list[dict]:
        self.product_calls += 1
        return [
            {"id": 71, "title": "Bella Tee", "type": "T-SHIRT", "image": "t.png", "model": "3001"},
            {"id": 19, "title": "Mug", "type": "MUG", "image": "m.png", "model": "11oz"},
        ]


def _provider(image_store, client: FakePrintfulClient | None, *, usage=None, cache=None) -> PrintfulMockupProvider:
    return PrintfulMockupProvider(
        api_key="pf-live" if client else None,
        image_store=image_store,
        client=client,
        poller=AsyncJobPoller(sleep=_no_sleep),
        usage=usage,
        cache=cache or CatalogCache(),
    )


def test_resolve_product_maps_categories_and_catalog_overrides():
    assert resolve_product("Mug").product_id == 19
    assert resolve_product("unknown") is None
    override = resolve_product("unknown", catalog_product_id=500)
    assert override.product_id == 500
    assert override.placement == "front"


def test_pick_placement_prefers_printfile_type_only_without_printfile_ids():
    product = resolve_product("poster")
    assert pick_placement(product, {"printfiles": [{"printfile_id": 5}]}) == "default"
    assert pick_placement(resolve_product("mug"), {"printfiles": [{"type": "wrap"}]}) == "wrap"
    assert pick_placement(resolve_product("mug"), {}) == "front"


def test_task_status_parsing():
    result = {
        "status": "completed",
        "mockups": [{"mockup_url": "https://x/main.png", "extra": [{"url": "https://x/extra.png"}]}],
    }
    assert collect_mockup_urls(result) == ["https://x/extra.png", "https://x/main.png"]
    assert parse_task_status({"result": result}).state == JobState.succeeded
    assert parse_task_status({"result": {"status": "completed", "mockups": []}}).state == JobState.generate_failed
    failed = parse_task_status({"result": {"status": "failed", "error": "bad file"}})
    assert failed.state == JobState.generate_failed
    assert failed.error_message == "bad file"
    assert parse_task_status({"result": {"status": "pending"}}).state == JobState.pending


def test_without_key_reports_no_key(image_store):
    result = asyncio.run(_provider(image_store, None).render_mockup("https://cdn.test/art.png", "mug"))

    assert result.provider == "printful-no-key"
    assert not result.ok


def test_unsupported_category(image_store):
    result = asyncio.run(
        _provider(image_store, FakePrintfulClient()).render_mockup("https://cdn.test/art.png", "surfboard")
    )

    assert result.provider == "printful-unsupported"


def test_render_mockup_success_records_usage(image_store):
    client = FakePrintfulClient(
        task_results=[
            PrintfulApiError(message="blip", status_code=503),
            {"result": {"status": "pending"}},
            {"result": {"status": "completed", "mockups": [{"mockup_url": "https://files.printful.test/m1.png"}]}},
        ]
    )
    usage = ApiUsageTracker()

    result = asyncio.run(
        _provider(image_store, client, usage=usage).render_mockup(
            "https://cdn.test/art.png", "mug", poll_interval=1, deadline=10
        )
    )

    assert result.ok
    assert result.mockup_urls == ["https://files.printful.test/m1.png"]
    assert client.created[0].variant_id == 4011
    assert client.created[0].image_url == "https://cdn.test/art.png"
    assert client.uploads == []
    assert usage.calls()[0].provider == "printful"


def test_inline_artwork_is_uploaded_first(image_store):
    client = FakePrintfulClient()
    data_uri = "data:image/png;base64," + base64.b64encode(b"art").decode("ascii")

    result = asyncio.run(_provider(image_store, client).render_mockup(data_uri, "tshirt"))

    assert result.ok
    assert client.uploads[0][1] == "image/png"
    assert client.created[0].image_url == "https://files.printful.test/uploaded.png"


def test_failed_task_and_missing_variants(image_store):
    failing = FakePrintfulClient(task_results=[{"result": {"status": "failed", "error": "bad file"}}])
    failed = asyncio.run(_provider(image_store, failing).render_mockup("https://cdn.test/art.png", "mug"))
    assert failed.provider == "printful-failed"
    assert "bad file" in failed.message

    no_variant = asyncio.run(
        _provider(image_store, FakePrintfulClient(variant_ids=())).render_mockup("https://cdn.test/art.png", "mug")
    )
    assert no_variant.provider == "printful-no-variant"


def test_timeout_when_task_never_completes(image_store):
    client = FakePrintfulClient(task_results=[{"result": {"status": "pending"}} for _ in range(3)])

    result = asyncio.run(
        _provider(image_store, client).render_mockup("https://cdn.test/art.png", "mug", poll_interval=2, deadline=6)
    )

    assert result.provider == "printful-timeout"


def test_catalog_is_cached_per_key(image_store):
    client = FakePrintfulClient()
    provider = _provider(image_store, client, cache=CatalogCache(ttl_seconds=60))

    first = asyncio.run(provider.get_product_catalog())
    second = asyncio.run(provider.get_product_catalog())

    assert first["source"] == "api"
    assert first["categories"] == ["Mugs", "T-Shirts"]
    assert second["source"] == "cache"
    assert client.product_calls == 1


def test_catalog_without_key(image_store):
    catalog = asyncio.run(_provider(image_store, None).get_product_catalog())

    assert catalog == {"products": [], "categories": [], "source": "no-key"}
