"""
KIE image generation: submit a task, then poll `record-info` until it finishes.

KIE answers with several payload shapes depending on the endpoint family
(`gpt4o-image`, `flux/kontext`, generic). Everything shape-specific is decoded
here into `JobStatus`/`SubmittedJob` so the rest of the pipeline never sees
raw KIE payloads.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from pod_pipeline.config import settings
from pod_pipeline.metrics import NullUsageRecorder, UsageRecorder
from pod_pipeline.polling import (
    AsyncJobPoller,
    JobState,
    JobStatus,
    PollOutcome,
    PollOutcomeStatus,
    SubmittedJob,
)
from pod_pipeline.shapes import kie_aspect_ratio

logger = logging.getLogger(__name__)

DEFAULT_GENERATE_URL = "https://api.kie.ai/api/v1/gpt4o-image/generate"
_FLUX_MODEL = "flux-kontext-pro"
_DEFAULT_ERROR = "KIE reported task failure"

_STRING_FLAGS = {
    "SUCCESS": 1,
    "GENERATING": 0,
    "PENDING": 0,
    "PROCESSING": 0,
    "CREATE_TASK_FAILED": 2,
    "GENERATE_FAILED": 3,
    "FAILED": 3,
    "ERROR": 3,
}


class KieApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.is_network_error = status_code is None


def derive_record_info_url(generate_url: str) -> str:
    clean = (generate_url or "").strip()
    if not clean:
        return ""
    if re.search(r"/generate(?:\?.*)?$", clean):
        return re.sub(r"/generate(?:\?.*)?$", "/record-info", clean)
    if clean.endswith("/"):
        return f"{clean}record-info"
    return f"{clean}/record-info"


def endpoint_family(generate_url: str) -> str:
    if "/flux/kontext/" in generate_url:
        return "flux"
    if "/gpt4o-image/" in generate_url:
        return "gpt4o"
    return "generic"


def default_poll_timing(generate_url: str) -> tuple[float, float]:
    """(interval, deadline) in seconds when the caller supplies none."""
    if endpoint_family(generate_url) == "gpt4o":
        return 2.5, 60.0
    return 2.0, 45.0


def build_request_body(
    generate_url: str,
    *,
    prompt: str,
    shape: str | None,
    input_image_url: str | None = None,
) -> dict[str, Any]:
    ratio = kie_aspect_ratio(shape)
    family = endpoint_family(generate_url)
    if family == "flux":
        body: dict[str, Any] = {"prompt": prompt, "aspectRatio": ratio, "model": _FLUX_MODEL}
        if input_image_url:
            body["inputImage"] = input_image_url
        return body

    body = {"prompt": prompt, "size": ratio, "nVariants": 1}
    if family == "gpt4o":
        body["isEnhance"] = True
        body["enableFallback"] = True
    if input_image_url:
        body["filesUrl"] = [input_image_url]
    return body


def parse_task_id(payload: dict[str, Any]) -> Optional[str]:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for candidate in (data.get("taskId"), data.get("task_id"), payload.get("taskId"), payload.get("task_id")):
        if isinstance(candidate, (str, int)) and str(candidate).strip():
            return str(candidate).strip()
    return None


def _first_url(value: Any) -> Optional[str]:
    if isinstance(value, list) and value:
        first = value[0]
        if isinstance(first, str) and first:
            return first
        if isinstance(first, dict) and isinstance(first.get("url"), str) and first["url"]:
            return first["url"]
    return None


def pick_result_urls(data: dict[str, Any]) -> list[str]:
    response = data.get("response")
    if not isinstance(response, dict):
        nested = data.get("data")
        response = nested.get("response") if isinstance(nested, dict) else None
    sources = [response] if isinstance(response, dict) else []
    sources.append(data)
    for source in sources:
        direct = source.get("resultImageUrl")
        if isinstance(direct, str) and direct:
            return [direct]
        for key in ("resultUrls", "result_urls", "images"):
            values = source.get(key)
            if _first_url(values):
                return [
                    item if isinstance(item, str) else item.get("url")
                    for item in values
                    if (isinstance(item, str) and item) or (isinstance(item, dict) and item.get("url"))
                ]
    return []


def parse_success_flag(data: dict[str, Any]) -> Optional[int]:
    raw = data.get("successFlag")
    if raw is None:
        raw = data.get("success_flag")
    if raw is None:
        raw = data.get("status")
    if raw is None:
        return None
    if isinstance(raw, str):
        normalized = raw.strip().upper()
        if normalized in _STRING_FLAGS:
            return _STRING_FLAGS[normalized]
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def pick_error_message(payload: dict[str, Any]) -> str:
    for key in ("errorMessage", "error_message", "msg"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return _DEFAULT_ERROR


def parse_status_payload(payload: dict[str, Any]) -> JobStatus:
    """Map one `record-info` response onto the canonical JobStatus."""
    code = payload.get("code")
    if code is not None and str(code) != "200":
        raise KieApiError(message=pick_error_message(payload), status_code=_as_status(code))

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    flag = parse_success_flag(data)
    urls = pick_result_urls(data)

    if flag in (1, 200) and urls:
        return JobStatus(state=JobState.succeeded, result_urls=urls)
    if flag == 2:
        return JobStatus(state=JobState.create_failed, error_message=pick_error_message(data))
    if flag == 3:
        return JobStatus(state=JobState.generate_failed, error_message=pick_error_message(data))
    if urls:
        return JobStatus(state=JobState.succeeded, result_urls=urls, best_effort=True)
    return JobStatus(state=JobState.pending)


def _as_status(code: Any) -> int | None:
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


@dataclass
class KieImageRequest:
    prompt: str
    shape: str | None = None
    input_image_url: str | None = None


class KieJobBackend:
    def __init__(self, *, api_key: str, generate_url: str | None = None, timeout: float | None = None) -> None:
        self._api_key = api_key
        self.generate_url = (generate_url or "").strip() or DEFAULT_GENERATE_URL
        self.record_info_url = derive_record_info_url(self.generate_url)
        self._timeout = timeout or settings.PROVIDER_REQUEST_TIMEOUT_SECONDS

    async def submit(self, request: KieImageRequest) -> SubmittedJob:
        body = build_request_body(
            self.generate_url,
            prompt=request.prompt,
            shape=request.shape,
            input_image_url=request.input_image_url,
        )
        payload = await self._request_json("POST", self.generate_url, json=body)
        code = payload.get("code")
        if code is not None and str(code) != "200":
            raise KieApiError(message=pick_error_message(payload), status_code=_as_status(code))

        task_id = parse_task_id(payload)
        if task_id:
            return SubmittedJob(job_id=task_id)
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        urls = pick_result_urls(data)
        if urls:
            return SubmittedJob(job_id=None, result_urls=urls)
        raise KieApiError(message=f"KIE returned no taskId. Message: {pick_error_message(payload)}", status_code=502)

    async def fetch_status(self, job_id: str) -> JobStatus:
        payload = await self._request_json("GET", self.record_info_url, params={"taskId": job_id})
        return parse_status_payload(payload)

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise KieApiError(message=f"Network error while calling KIE: {exc}") from exc

        if response.status_code >= 400:
            raise KieApiError(
                message=f"KIE request failed ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise KieApiError(message="KIE returned invalid JSON", status_code=502) from exc
        if not isinstance(body, dict):
            raise KieApiError(message="KIE response must be a JSON object", status_code=502)
        return body


class KieImageProvider:
    name = "kie"

    def __init__(
        self,
        *,
        api_key: str,
        generate_url: str | None = None,
        edit_url: str | None = None,
        poller: AsyncJobPoller | None = None,
        usage: UsageRecorder | None = None,
    ) -> None:
        self._api_key = api_key
        self._generate_url = generate_url or settings.KIE_GENERATE_URL
        self._edit_url = edit_url or settings.KIE_EDIT_URL
        self._poller = poller or AsyncJobPoller()
        self._usage = usage or NullUsageRecorder()

    def backend_for(self, *, has_reference: bool) -> KieJobBackend:
        url = self._edit_url if has_reference and self._edit_url else self._generate_url
        return KieJobBackend(api_key=self._api_key, generate_url=url)

    async def generate(
        self,
        prompt: str,
        *,
        reference_image: str | None = None,
        shape: str | None = None,
        deadline: float | None = None,
        poll_interval: float | None = None,
        cancel_event=None,
    ) -> PollOutcome:
        backend = self.backend_for(has_reference=bool(reference_image))
        default_interval, default_deadline = default_poll_timing(backend.generate_url)
        outcome = await self._poller.run(
            backend,
            KieImageRequest(prompt=prompt, shape=shape, input_image_url=reference_image),
            interval=poll_interval or default_interval,
            deadline=deadline or default_deadline,
            cancel_event=cancel_event,
        )
        if outcome.ok:
            self._usage.record_call("kie", "image", "edit" if reference_image else "generate")
        elif outcome.status != PollOutcomeStatus.succeeded:
            logger.info(
                "kie.job_unresolved",
                extra={"status": outcome.status.value, "job_id": outcome.job_id, "error": outcome.error_message},
            )
        return outcome
