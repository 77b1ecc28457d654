"""
Gemini client manager - one shared google-genai client per process.

Supports two backends through the same SDK:
  1. Vertex AI (production) - STORYLOOM_USE_VERTEX=true + GOOGLE_CLOUD_PROJECT,
     authenticated with the service account
  2. Gemini Developer API (local dev) - GOOGLE_API_KEY
"""

from __future__ import annotations

from functools import lru_cache

from google import genai

from storyloom.errors import ProviderNotConfiguredError
from storyloom.infrastructure.settings import (
    gemini_location,
    google_api_key,
    google_cloud_project,
    use_vertex,
)
from storyloom.observability.logging import get_logger

logger = get_logger(__name__)


def provider_configured() -> bool:
    """Whether credentials for either backend are present (no network call)."""
    return use_vertex() or google_api_key() is not None


@lru_cache(maxsize=1)
def get_gemini_client() -> genai.Client:
    """
    Get or create the shared Gemini client.

    Uses @lru_cache for a thread-safe singleton. Vertex AI is preferred when
    enabled; otherwise the API key backend is used.

    Raises:
        ProviderNotConfiguredError: If neither backend has credentials
    """
    if use_vertex():
        project = google_cloud_project()
        location = gemini_location()
        client = genai.Client(vertexai=True, project=project, location=location)
        logger.info("Initialized Gemini client (Vertex AI): project=%s, location=%s", project, location)
        return client

    api_key = google_api_key()
    if not api_key:
        raise ProviderNotConfiguredError(
            "Neither Vertex AI nor GOOGLE_API_KEY configured. "
            "Set STORYLOOM_USE_VERTEX=true with GOOGLE_CLOUD_PROJECT, or set GOOGLE_API_KEY."
        )

    client = genai.Client(api_key=api_key)
    logger.info("Initialized Gemini client (API key)")
    return client


def clear_client_cache() -> None:
    """Drop the cached client so the next call re-reads credentials."""
    get_gemini_client.cache_clear()
    logger.info("Cleared Gemini client cache")
