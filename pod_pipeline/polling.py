from __future__ import annotations

import asyncio
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    create_failed = "create_failed"
    generate_failed = "generate_failed"


class PollOutcomeStatus(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"


@dataclass
class JobStatus:
    state: JobState
    result_urls: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    best_effort: bool = False

    @property
    def result_url(self) -> Optional[str]:
        return self.result_urls[0] if self.result_urls else None


@dataclass
class SubmittedJob:
    job_id: Optional[str]
    result_urls: list[str] = field(default_factory=list)


@dataclass
class PollOutcome:
    status: PollOutcomeStatus
    job_id: Optional[str] = None
    result_urls: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    attempts: int = 0
    best_effort: bool = False

    @property
    def ok(self) -> bool:
        return self.status == PollOutcomeStatus.succeeded and bool(self.result_urls)

    @property
    def result_url(self) -> Optional[str]:
        return self.result_urls[0] if self.result_urls else None


class JobBackend(Protocol):
    """A remote job API reduced to submit + status; adapters map wire payloads onto JobStatus."""

    async def submit(self, request: Any) -> SubmittedJob: ...

    async def fetch_status(self, job_id: str) -> JobStatus: ...


def max_poll_attempts(interval: float, deadline: float) -> int:
    if interval <= 0:
        raise ValueError("interval must be positive")
    return max(1, math.floor(deadline / interval))


@contextmanager
def deadline_event(
    seconds: float | None, cancel_event: Optional[asyncio.Event] = None
) -> Iterator[Optional[asyncio.Event]]:
    """Cancellation event that fires once `seconds` have passed. An event passed in by the caller wins."""
    if cancel_event is not None or not seconds:
        yield cancel_event
        return
    event = asyncio.Event()
    timer = asyncio.get_running_loop().call_later(seconds, event.set)
    try:
        yield event
    finally:
        timer.cancel()


class AsyncJobPoller:
    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self._sleep = sleep

    async def run(
        self,
        backend: JobBackend,
        request: Any,
        *,
        interval: float,
        deadline: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PollOutcome:
        submitted = await backend.submit(request)
        if submitted.result_urls:
            return PollOutcome(
                status=PollOutcomeStatus.succeeded,
                job_id=submitted.job_id,
                result_urls=list(submitted.result_urls),
            )
        if not submitted.job_id:
            return PollOutcome(
                status=PollOutcomeStatus.failed,
                error_message="Job submission returned neither a job id nor a result",
            )
        return await self.poll_until_done(
            backend,
            submitted.job_id,
            interval=interval,
            deadline=deadline,
            cancel_event=cancel_event,
        )

    async def poll_until_done(
        self,
        backend: JobBackend,
        job_id: str,
        *,
        interval: float,
        deadline: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PollOutcome:
        attempts_allowed = max_poll_attempts(interval, deadline)
        attempts = 0
        for attempt in range(attempts_allowed):
            if cancel_event is not None and cancel_event.is_set():
                return PollOutcome(status=PollOutcomeStatus.cancelled, job_id=job_id, attempts=attempts)

            status = await backend.fetch_status(job_id)
            attempts += 1

            if status.state in (JobState.create_failed, JobState.generate_failed):
                return PollOutcome(
                    status=PollOutcomeStatus.failed,
                    job_id=job_id,
                    error_message=status.error_message or "Remote job reported failure",
                    attempts=attempts,
                )
            if status.state == JobState.succeeded and status.result_urls:
                return PollOutcome(
                    status=PollOutcomeStatus.succeeded,
                    job_id=job_id,
                    result_urls=list(status.result_urls),
                    attempts=attempts,
                    best_effort=status.best_effort,
                )

            if attempt + 1 < attempts_allowed:
                cancelled = await self._pause(interval, cancel_event)
                if cancelled:
                    logger.info("poller.cancelled", extra={"job_id": job_id, "attempts": attempts})
                    return PollOutcome(status=PollOutcomeStatus.cancelled, job_id=job_id, attempts=attempts)

        logger.info(
            "poller.timed_out",
            extra={"job_id": job_id, "attempts": attempts, "deadline_seconds": deadline},
        )
        return PollOutcome(
            status=PollOutcomeStatus.timed_out,
            job_id=job_id,
            error_message=f"Job {job_id} did not finish within {deadline:g}s",
            attempts=attempts,
        )

    async def _pause(self, interval: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for `interval`; returns True when the cancel event fired first."""
        if cancel_event is None:
            await self._sleep(interval)
            return False
        if cancel_event.is_set():
            return True

        sleeper = asyncio.ensure_future(self._sleep(interval))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return cancel_event.is_set()
