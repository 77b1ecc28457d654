"""
Async HTTP client for the image job endpoints.

Used by the poll loop and by anything that drives generation from outside the
API process (scripts, the editor's Python tooling).
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from storyloom.jobs.models import JobStatusResult, SubmitResult
from storyloom.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
NODE_IMAGE_FETCH_ATTEMPTS = 3


class ApiError(Exception):
    """Non-success response from the API."""

    def __init__(self, status_code: int, detail: str, error_type: str | None = None) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.error_type = error_type


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    detail = response.reason_phrase or "Request failed"
    error_type = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = str(body.get("detail", detail))
        error_type = body.get("error_type")
    raise ApiError(response.status_code, detail, error_type)


class StoryloomApiClient:
    def __init__(
        self,
        base_url: str,
        user_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        headers = {"X-User-Id": user_id} if user_id else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )
        if client is not None and user_id:
            self._client.headers.update(headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> StoryloomApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def submit_image(self, node_id: str, timeline_id: str, prompt: str) -> SubmitResult:
        response = await self._client.post(
            "/api/jobs/images/generate",
            json={"node_id": node_id, "timeline_id": timeline_id, "prompt": prompt},
        )
        _raise_for_status(response)
        return SubmitResult.model_validate(response.json())

    async def get_job_status(self, job_id: str) -> JobStatusResult:
        response = await self._client.get(f"/api/jobs/images/jobs/{job_id}")
        _raise_for_status(response)
        return JobStatusResult.model_validate(response.json())

    # Called once per completed job, so transport failures are retried here
    @retry(
        stop=stop_after_attempt(NODE_IMAGE_FETCH_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def get_node_image(self, timeline_id: str, node_id: str) -> str | None:
        """Persisted image URL for a node, or None if it has none yet."""
        response = await self._client.get(
            f"/api/jobs/images/timelines/{timeline_id}/nodes/{node_id}"
        )
        _raise_for_status(response)
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected node image response: {type(body).__name__}")
        return body.get("image_url")
