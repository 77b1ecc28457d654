"""
Client-side reconciliation of queued image jobs.

ImagePollLoop runs one asyncio task per node. Each tick sleeps first and then
polls, so ticks never overlap. A poll ends when the job completes (image
fetched and shown), fails (reason surfaced), or the ceiling elapses (the node
simply stops showing as generating; the job may still finish later and the
image will be there on the next load).

GenerationController is the entry point the editor calls. It owns the set of
nodes currently generating so a double click cannot submit twice.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from storyloom.client.api_client import ApiError, StoryloomApiClient
from storyloom.config import POLL_INTERVAL_SECONDS, POLL_TIMEOUT_SECONDS
from storyloom.jobs.models import JobStatus, SubmitResult
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Image generation failed"
EXPIRED_JOB_MESSAGE = "Image job is no longer available"


class GenerationView(Protocol):
    def show_generating(self, node_id: str) -> None: ...

    def clear_generating(self, node_id: str) -> None: ...

    def show_image(self, node_id: str, image_url: str) -> None: ...

    def show_error(self, node_id: str, message: str) -> None: ...


@dataclass
class PollState:
    node_id: str
    job_id: str
    timeline_id: str
    started_at: float
    cancelled: bool = False
    task: asyncio.Task | None = field(default=None, repr=False, compare=False)


class ImagePollLoop:
    def __init__(
        self,
        api: StoryloomApiClient,
        view: GenerationView,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.view = view
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, PollState] = {}

    def active(self) -> list[str]:
        return list(self._states)

    def start(self, node_id: str, job_id: str, timeline_id: str) -> PollState:
        """Begin polling job_id for node_id. Must be called from a running event loop."""
        existing = self._states.get(node_id)
        if existing is not None and not existing.cancelled:
            return existing

        state = PollState(
            node_id=node_id, job_id=job_id, timeline_id=timeline_id, started_at=self._clock()
        )
        self._states[node_id] = state
        state.task = asyncio.get_running_loop().create_task(self._run(state))
        log_event("poll.started", node_id=node_id, job_id=job_id)
        return state

    async def _run(self, state: PollState) -> None:
        try:
            while not state.cancelled:
                await self._sleep(self.interval)
                if state.cancelled:
                    return

                if self._clock() - state.started_at >= self.timeout:
                    counter("poll.timeout")
                    log_event("poll.timeout", node_id=state.node_id, job_id=state.job_id)
                    self.view.clear_generating(state.node_id)
                    return

                if await self._tick(state):
                    return
        except Exception as e:
            # The node must never stay marked as generating
            counter("poll.crashed")
            logger.exception("Poll for job %s stopped unexpectedly", state.job_id)
            if not state.cancelled:
                self.view.clear_generating(state.node_id)
                self.view.show_error(state.node_id, f"{DEFAULT_FAILURE_MESSAGE} ({type(e).__name__})")
        finally:
            if self._states.get(state.node_id) is state:
                del self._states[state.node_id]

    async def _tick(self, state: PollState) -> bool:
        """Poll once. True when polling for this node is finished."""
        try:
            result = await self.api.get_job_status(state.job_id)
            if state.cancelled:
                return True

            if result.status is JobStatus.COMPLETED:
                image_url = await self.api.get_node_image(state.timeline_id, state.node_id)
                if state.cancelled:
                    return True
                if image_url:
                    self.view.show_image(state.node_id, image_url)
                self.view.clear_generating(state.node_id)
                counter("poll.completed")
                log_event("poll.completed", node_id=state.node_id, job_id=state.job_id)
                return True

            if result.status is JobStatus.FAILED:
                self.view.clear_generating(state.node_id)
                self.view.show_error(state.node_id, result.error or DEFAULT_FAILURE_MESSAGE)
                counter("poll.failed")
                log_event("poll.failed", node_id=state.node_id, job_id=state.job_id, error=result.error)
                return True

        except ApiError as e:
            if e.status_code == 404:
                # Job aged out of retention or never existed
                self.view.clear_generating(state.node_id)
                self.view.show_error(state.node_id, EXPIRED_JOB_MESSAGE)
                counter("poll.job_missing")
                return True
            counter("poll.transient_error")
            logger.warning("Poll for job %s returned %s, retrying", state.job_id, e.status_code)
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers non-JSON bodies and unexpected shapes (pydantic ValidationError)
            counter("poll.transient_error")
            logger.warning("Poll for job %s failed (%s), retrying", state.job_id, type(e).__name__)

        return False

    def close(self) -> None:
        """Stop every poll. Results arriving after this are discarded."""
        for state in list(self._states.values()):
            state.cancelled = True
            if state.task is not None:
                state.task.cancel()
        self._states.clear()

    async def drain(self) -> None:
        """Wait for every running poll to finish."""
        tasks = [s.task for s in self._states.values() if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class GenerationController:
    """Submits image requests and hands queued jobs to the poll loop."""

    def __init__(
        self,
        api: StoryloomApiClient,
        view: GenerationView,
        poll_loop: ImagePollLoop | None = None,
    ) -> None:
        self.api = api
        self.view = view
        self.generating: set[str] = set()
        self.poll_loop = poll_loop or ImagePollLoop(api, self)

    def is_generating(self, node_id: str) -> bool:
        return node_id in self.generating

    # GenerationView, so the poll loop's outcomes also release the node here

    def show_generating(self, node_id: str) -> None:
        self.generating.add(node_id)
        self.view.show_generating(node_id)

    def clear_generating(self, node_id: str) -> None:
        self.generating.discard(node_id)
        self.view.clear_generating(node_id)

    def show_image(self, node_id: str, image_url: str) -> None:
        self.view.show_image(node_id, image_url)

    def show_error(self, node_id: str, message: str) -> None:
        self.view.show_error(node_id, message)

    async def generate(self, node_id: str, timeline_id: str, prompt: str) -> SubmitResult | None:
        """
        Request an image for a node. Returns None when nothing was submitted
        (already generating, or the request failed and the error was shown).
        """
        if node_id in self.generating:
            counter("poll.duplicate_request")
            return None

        self.show_generating(node_id)
        try:
            result = await self.api.submit_image(node_id, timeline_id, prompt)
        except ApiError as e:
            self.clear_generating(node_id)
            self.show_error(node_id, e.detail)
            return None
        except httpx.HTTPError as e:
            self.clear_generating(node_id)
            self.show_error(node_id, f"Could not reach the server ({type(e).__name__})")
            return None
        except ValueError as e:
            self.clear_generating(node_id)
            self.show_error(node_id, f"Unexpected response from the server ({type(e).__name__})")
            return None

        if result.status is JobStatus.QUEUED and result.job_id:
            self.poll_loop.start(node_id, result.job_id, timeline_id)
            return result

        # already_exists or completed inline: the image is persisted already
        try:
            image_url = await self.api.get_node_image(timeline_id, node_id)
        except (ApiError, httpx.HTTPError, ValueError) as e:
            logger.warning("Image for node %s persisted but fetch failed: %s", node_id, e)
            image_url = None
        if image_url:
            self.show_image(node_id, image_url)
        self.clear_generating(node_id)
        return result

    def close(self) -> None:
        self.poll_loop.close()
        self.generating.clear()
