"""Unit tests for the async API client, the image poll loop and the generation controller

Async code runs under asyncio.run; the poll loop gets a fake clock whose
sleep advances time instantly.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from storyloom.client.api_client import ApiError, StoryloomApiClient
from storyloom.client.poller import (
    DEFAULT_FAILURE_MESSAGE,
    EXPIRED_JOB_MESSAGE,
    GenerationController,
    ImagePollLoop,
)
from storyloom.jobs.models import JobStatus, JobStatusResult, SubmitResult
from storyloom.observability.telemetry import get_counter

IMAGE_URL = "data:image/png;base64,AAAA"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class RecordingView:
    def __init__(self) -> None:
        self.events: list[tuple[str, ...]] = []

    def show_generating(self, node_id):
        self.events.append(("generating", node_id))

    def clear_generating(self, node_id):
        self.events.append(("cleared", node_id))

    def show_image(self, node_id, image_url):
        self.events.append(("image", node_id, image_url))

    def show_error(self, node_id, message):
        self.events.append(("error", node_id, message))


class FakeApi:
    """Scripted API: each status poll pops the next outcome (the last one repeats)."""

    def __init__(self, outcomes=None, submit=None) -> None:
        self.outcomes = list(outcomes or [])
        self.submit = submit
        self.status_calls = 0
        self.image_url: str | None = IMAGE_URL

    async def submit_image(self, node_id, timeline_id, prompt):
        if isinstance(self.submit, Exception):
            raise self.submit
        return self.submit

    async def get_job_status(self, job_id):
        self.status_calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, JobStatusResult):
            return outcome
        return JobStatusResult(job_id=job_id, node_id="n1", status=outcome)

    async def get_node_image(self, timeline_id, node_id):
        return self.image_url


def _run_poll(api, view=None, timeout=120.0):
    view = view or RecordingView()
    clock = FakeClock()

    async def scenario():
        loop = ImagePollLoop(api, view, interval=3.0, timeout=timeout, clock=clock, sleep=clock.sleep)
        loop.start("n1", "job-1", "tl-1")
        await loop.drain()
        return loop

    loop = asyncio.run(scenario())
    return loop, view, clock


# --- Poll loop ---


def test_poll_completed_shows_image():
    api = FakeApi([JobStatus.QUEUED, JobStatus.ACTIVE, JobStatus.COMPLETED])

    loop, view, clock = _run_poll(api)

    assert view.events == [("image", "n1", IMAGE_URL), ("cleared", "n1")]
    assert api.status_calls == 3
    assert clock.now == 9.0
    assert loop.active() == []
    assert get_counter("poll.completed") == 1


def test_poll_failed_surfaces_reason():
    failed = JobStatusResult(job_id="job-1", node_id="n1", status=JobStatus.FAILED, error="GenerationFailedError: 503")

    _, view, _ = _run_poll(FakeApi([failed]))

    assert view.events == [("cleared", "n1"), ("error", "n1", "GenerationFailedError: 503")]


def test_poll_failed_without_reason_uses_default():
    _, view, _ = _run_poll(FakeApi([JobStatus.FAILED]))
    assert view.events[-1] == ("error", "n1", DEFAULT_FAILURE_MESSAGE)


def test_poll_timeout_clears_without_error():
    """At the ceiling the node stops showing as generating and no error is shown"""
    api = FakeApi([JobStatus.ACTIVE])

    _, view, clock = _run_poll(api)

    assert view.events == [("cleared", "n1")]
    assert clock.now == 120.0
    assert api.status_calls == 39
    assert get_counter("poll.timeout") == 1


def test_poll_transient_errors_keep_polling():
    request = httpx.Request("GET", "http://test/api/jobs/images/jobs/job-1")
    api = FakeApi(
        [
            httpx.ConnectError("refused", request=request),
            ApiError(500, "Internal error"),
            JobStatus.COMPLETED,
        ]
    )

    _, view, _ = _run_poll(api)

    assert view.events == [("image", "n1", IMAGE_URL), ("cleared", "n1")]
    assert get_counter("poll.transient_error") == 2


def test_poll_malformed_status_is_transient():
    api = FakeApi([ValueError("Expecting value: line 1 column 1 (char 0)"), JobStatus.COMPLETED])

    _, view, _ = _run_poll(api)

    assert view.events == [("image", "n1", IMAGE_URL), ("cleared", "n1")]
    assert get_counter("poll.transient_error") == 1


class BrokenImageApi(FakeApi):
    async def get_node_image(self, timeline_id, node_id):
        raise RuntimeError("connection pool closed")


def test_poll_unexpected_error_still_clears_node():
    _, view, _ = _run_poll(BrokenImageApi([JobStatus.COMPLETED]))

    assert view.events == [("cleared", "n1"), ("error", "n1", f"{DEFAULT_FAILURE_MESSAGE} (RuntimeError)")]
    assert get_counter("poll.crashed") == 1


def test_poll_missing_job_is_terminal():
    _, view, _ = _run_poll(FakeApi([ApiError(404, "Job not found")]))

    assert view.events == [("cleared", "n1"), ("error", "n1", EXPIRED_JOB_MESSAGE)]
    assert get_counter("poll.job_missing") == 1


def test_poll_completed_without_image_only_clears():
    api = FakeApi([JobStatus.COMPLETED])
    api.image_url = None

    _, view, _ = _run_poll(api)

    assert view.events == [("cleared", "n1")]


def test_duplicate_start_reuses_poll():
    api = FakeApi([JobStatus.COMPLETED])
    view = RecordingView()
    clock = FakeClock()

    async def scenario():
        loop = ImagePollLoop(api, view, clock=clock, sleep=clock.sleep)
        first = loop.start("n1", "job-1", "tl-1")
        second = loop.start("n1", "job-2", "tl-1")
        await loop.drain()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is second
    assert api.status_calls == 1


def test_close_discards_results():
    api = FakeApi([JobStatus.COMPLETED])
    view = RecordingView()
    clock = FakeClock()

    async def scenario():
        loop = ImagePollLoop(api, view, clock=clock, sleep=clock.sleep)
        state = loop.start("n1", "job-1", "tl-1")
        loop.close()
        await asyncio.gather(state.task, return_exceptions=True)
        return loop, state

    loop, state = asyncio.run(scenario())

    assert state.cancelled
    assert loop.active() == []
    assert view.events == []


# --- Controller ---


def _controller(api, view):
    clock = FakeClock()
    controller = GenerationController(api, view)
    controller.poll_loop = ImagePollLoop(api, controller, clock=clock, sleep=clock.sleep)
    return controller


def test_controller_queued_job_polls_until_done():
    api = FakeApi([JobStatus.QUEUED, JobStatus.COMPLETED], submit=SubmitResult(status=JobStatus.QUEUED, node_id="n1", job_id="job-1"))
    view = RecordingView()
    controller = _controller(api, view)

    async def scenario():
        result = await controller.generate("n1", "tl-1", "A storm")
        assert controller.is_generating("n1")
        duplicate = await controller.generate("n1", "tl-1", "A storm")
        await controller.poll_loop.drain()
        return result, duplicate

    result, duplicate = asyncio.run(scenario())

    assert result.job_id == "job-1"
    assert duplicate is None
    assert get_counter("poll.duplicate_request") == 1
    assert not controller.is_generating("n1")
    assert view.events == [("generating", "n1"), ("image", "n1", IMAGE_URL), ("cleared", "n1")]


def test_controller_inline_completion_shows_image():
    api = FakeApi(submit=SubmitResult(status=JobStatus.COMPLETED, node_id="n1"))
    view = RecordingView()
    controller = _controller(api, view)

    result = asyncio.run(controller.generate("n1", "tl-1", "A storm"))

    assert result.status is JobStatus.COMPLETED
    assert view.events == [("generating", "n1"), ("image", "n1", IMAGE_URL), ("cleared", "n1")]
    assert not controller.is_generating("n1")


def test_controller_submit_error_is_shown():
    api = FakeApi(submit=ApiError(429, "Too many requests. Please try again later.", "rate_limited"))
    view = RecordingView()
    controller = _controller(api, view)

    assert asyncio.run(controller.generate("n1", "tl-1", "A storm")) is None
    assert view.events[-1] == ("error", "n1", "Too many requests. Please try again later.")
    assert not controller.is_generating("n1")


def test_controller_releases_node_when_status_responses_are_malformed():
    """A node whose status polls never parse is released at the ceiling and can be retried"""
    api = FakeApi(
        [ValueError("Expecting value: line 1 column 1 (char 0)")],
        submit=SubmitResult(status=JobStatus.QUEUED, node_id="n1", job_id="job-1"),
    )
    view = RecordingView()
    controller = _controller(api, view)

    async def scenario():
        await controller.generate("n1", "tl-1", "A storm")
        await controller.poll_loop.drain()
        released = not controller.is_generating("n1")
        retry = await controller.generate("n1", "tl-1", "A storm")
        controller.close()
        return released, retry

    released, retry = asyncio.run(scenario())

    assert released
    assert retry is not None
    assert view.events[:2] == [("generating", "n1"), ("cleared", "n1")]


def test_controller_malformed_submit_response_is_shown():
    api = FakeApi(submit=ValueError("1 validation error for SubmitResult"))
    view = RecordingView()
    controller = _controller(api, view)

    assert asyncio.run(controller.generate("n1", "tl-1", "A storm")) is None
    assert view.events[-1] == ("error", "n1", "Unexpected response from the server (ValueError)")
    assert not controller.is_generating("n1")


# --- HTTP client ---


def _client(handler):
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(transport=transport, base_url="http://test")
    return StoryloomApiClient("http://test", user_id="user-1", client=http), http


def test_submit_image_sends_snake_case_body_and_user():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["user"] = request.headers.get("X-User-Id")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "queued", "node_id": "n1", "job_id": "job-1"})

    async def scenario():
        api, http = _client(handler)
        try:
            return await api.submit_image("n1", "tl-1", "A storm")
        finally:
            await http.aclose()

    result = asyncio.run(scenario())

    assert result.status is JobStatus.QUEUED
    assert seen == {
        "path": "/api/jobs/images/generate",
        "user": "user-1",
        "body": {"node_id": "n1", "timeline_id": "tl-1", "prompt": "A storm"},
    }


def test_error_response_raises_api_error():
    def handler(request):
        return httpx.Response(
            409,
            json={"detail": "Image generation already in progress for this node", "error_type": "generation_in_progress"},
        )

    async def scenario():
        api, http = _client(handler)
        try:
            await api.get_job_status("job-1")
        finally:
            await http.aclose()

    with pytest.raises(ApiError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.status_code == 409
    assert exc_info.value.error_type == "generation_in_progress"


def test_get_node_image_retries_transport_errors():
    attempts = []

    def handler(request):
        attempts.append(request.url.path)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"node_id": "n1", "timeline_id": "tl-1", "image_url": IMAGE_URL})

    async def scenario():
        api, http = _client(handler)
        try:
            return await api.get_node_image("tl-1", "n1")
        finally:
            await http.aclose()

    assert asyncio.run(scenario()) == IMAGE_URL
    assert attempts == ["/api/jobs/images/timelines/tl-1/nodes/n1"] * 2


def test_non_json_status_body_raises_value_error():
    def handler(request):
        return httpx.Response(200, text="<html>Bad gateway</html>")

    async def scenario():
        api, http = _client(handler)
        try:
            await api.get_job_status("job-1")
        finally:
            await http.aclose()

    with pytest.raises(ValueError):
        asyncio.run(scenario())
