from __future__ import annotations

import asyncio

import pytest

from pod_pipeline.metrics import ApiUsageTracker
from pod_pipeline.polling import AsyncJobPoller, JobState, PollOutcomeStatus
from pod_pipeline.providers.kie import (
    KieApiError,
    KieImageProvider,
    KieJobBackend,
    build_request_body,
    derive_record_info_url,
    parse_status_payload,
    parse_task_id,
)


async def _no_sleep(seconds: float) -> None:
    return None


def test_record_info_url_replaces_generate_suffix():
    assert (
        derive_record_info_url("https://api.kie.ai/api/v1/gpt4o-image/generate")
        == "https://api.kie.ai/api/v1/gpt4o-image/record-info"
    )
    assert derive_record_info_url("https://api.kie.ai/api/v1/jobs/") == "https://api.kie.ai/api/v1/jobs/record-info"
    assert derive_record_info_url("") == ""


def test_request_body_follows_endpoint_family():
    flux = build_request_body(
        "https://api.kie.ai/api/v1/flux/kontext/generate",
        prompt="a fox",
        shape="portrait",
        input_image_url="https://cdn.test/ref.png",
    )
    assert flux == {
        "prompt": "a fox",
        "aspectRatio": "3:4",
        "model": "flux-kontext-pro",
        "inputImage": "https://cdn.test/ref.png",
    }

    gpt4o = build_request_body("https://api.kie.ai/api/v1/gpt4o-image/generate", prompt="a fox", shape=None)
    assert gpt4o["size"] == "1:1"
    assert gpt4o["isEnhance"] is True
    assert "filesUrl" not in gpt4o


def test_parse_task_id_accepts_nested_and_top_level_ids():
    assert parse_task_id({"data": {"taskId": "abc"}}) == "abc"
    assert parse_task_id({"task_id": 42}) == "42"
    assert parse_task_id({"data": {}}) is None


def test_status_payload_success_and_failure_flags():
    succeeded = parse_status_payload(
        {"code": 200, "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/a.png"]}}}
    )
    assert succeeded.state == JobState.succeeded
    assert succeeded.result_urls == ["https://cdn.test/a.png"]
    assert not succeeded.best_effort

    failed = parse_status_payload({"code": 200, "data": {"successFlag": 3, "errorMessage": "nsfw"}})
    assert failed.state == JobState.generate_failed
    assert failed.error_message == "nsfw"

    create_failed = parse_status_payload({"code": 200, "data": {"status": "CREATE_TASK_FAILED"}})
    assert create_failed.state == JobState.create_failed

    pending = parse_status_payload({"code": 200, "data": {"successFlag": 0}})
    assert pending.state == JobState.pending


def test_urls_without_success_flag_are_accepted_best_effort():
    status = parse_status_payload({"data": {"resultImageUrl": "https://cdn.test/late.png"}})

    assert status.state == JobState.succeeded
    assert status.best_effort


def test_non_200_envelope_raises():
    with pytest.raises(KieApiError, match="quota exceeded"):
        parse_status_payload({"code": 402, "msg": "quota exceeded"})


def test_provider_submits_polls_and_records_usage(monkeypatch):
    responses = [
        {"code": 200, "data": {"taskId": "task-9"}},
        {"code": 200, "data": {"successFlag": 0}},
        {"code": 200, "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/done.png"]}}},
    ]
    requests: list[tuple[str, str, dict]] = []

    async def fake_request_json(self, method: str, url: str, **kwargs):
        requests.append((method, url, kwargs))
        return responses.pop(0)

    monkeypatch.setattr(KieJobBackend, "_request_json", fake_request_json)
    usage = ApiUsageTracker()
    provider = KieImageProvider(
        api_key="kie-live",
        generate_url="https://api.kie.ai/api/v1/gpt4o-image/generate",
        poller=AsyncJobPoller(sleep=_no_sleep),
        usage=usage,
    )

    outcome = asyncio.run(provider.generate("a fox", shape="square", deadline=10, poll_interval=1))

    assert outcome.ok
    assert outcome.result_url == "https://cdn.test/done.png"
    assert requests[0][0] == "POST"
    assert requests[1][1].endswith("/record-info")
    assert requests[1][2]["params"] == {"taskId": "task-9"}
    assert [(c.provider, c.model, c.operation) for c in usage.calls()] == [("kie", "image", "generate")]


def test_provider_reports_timeout_without_usage(monkeypatch):
    async def fake_request_json(self, method: str, url: str, **kwargs):
        if method == "POST":
            return {"code": 200, "data": {"taskId": "task-slow"}}
        return {"code": 200, "data": {"successFlag": 0}}

    monkeypatch.setattr(KieJobBackend, "_request_json", fake_request_json)
    usage = ApiUsageTracker()
    provider = KieImageProvider(api_key="kie-live", poller=AsyncJobPoller(sleep=_no_sleep), usage=usage)

    outcome = asyncio.run(provider.generate("a fox", deadline=6, poll_interval=2))

    assert outcome.status == PollOutcomeStatus.timed_out
    assert outcome.attempts == 3
    assert usage.calls() == []


def test_submit_without_task_id_or_urls_raises(monkeypatch):
    async def fake_request_json(self, method: str, url: str, **kwargs):
        return {"code": 200, "msg": "accepted", "data": {}}

    monkeypatch.setattr(KieJobBackend, "_request_json", fake_request_json)
    provider = KieImageProvider(api_key="kie-live", poller=AsyncJobPoller(sleep=_no_sleep))

    with pytest.raises(KieApiError, match="no taskId"):
        asyncio.run(provider.generate("a fox", deadline=2, poll_interval=1))
