from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from pod_pipeline.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = 429


def compute_backoff_delay(
    attempt: int,
    *,
    base_delay: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry `attempt` (0-indexed): base * 2^attempt plus up to `jitter` seconds."""
    return base_delay * (2**attempt) + rand() * jitter


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if getattr(exc, "is_network_error", False):
        return True
    status_code = getattr(exc, "status_code", None)
    if not isinstance(status_code, int):
        return False
    return status_code == _RETRYABLE_STATUS or status_code >= 500


async def retry_with_backoff(
    fn: Callable[[int], Awaitable[T]],
    *,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    jitter: Optional[float] = None,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    label: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    retries = settings.PUBLISH_MAX_RETRIES if max_retries is None else max_retries
    base = settings.PUBLISH_RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
    spread = settings.PUBLISH_RETRY_JITTER_SECONDS if jitter is None else jitter

    attempt = 0
    while True:
        try:
            return await fn(attempt)
        except Exception as exc:
            if attempt >= retries or not should_retry(exc):
                raise
            delay = compute_backoff_delay(attempt, base_delay=base, jitter=spread, rand=rand)
            logger.warning(
                "retry.scheduled",
                extra={"label": label, "attempt": attempt + 1, "delay_seconds": round(delay, 3), "error": str(exc)},
            )
            await sleep(delay)
            attempt += 1
