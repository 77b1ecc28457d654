"""Async client and poll loop for background image jobs."""

from __future__ import annotations

from storyloom.client.api_client import ApiError, StoryloomApiClient
from storyloom.client.poller import GenerationController, ImagePollLoop, PollState

__all__ = [
    "ApiError",
    "GenerationController",
    "ImagePollLoop",
    "PollState",
    "StoryloomApiClient",
]
