"""
Application-wide settings and environment configuration

Credentials and the queue URL are read through functions at call time, so a
.env loaded after import (or a test's monkeypatch) is honoured.
"""

from __future__ import annotations

import os

# Environment
ENV = os.getenv("STORYLOOM_ENV", "development")

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Google Cloud / Gemini
GEMINI_LOCATION = os.getenv("GEMINI_LOCATION", "us-central1")
GEMINI_TEXT_MODEL = os.getenv("GEMINI_TEXT_MODEL", "gemini-2.5-flash")
GEMINI_EXTRACTION_MODEL = os.getenv("GEMINI_EXTRACTION_MODEL", "gemini-2.5-flash-lite")
GEMINI_IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "2048"))
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "1.0"))

# Feature Flags
QUOTA_ENABLED = os.getenv("STORYLOOM_QUOTA_ENABLED", "true").lower() == "true"


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"


def google_api_key() -> str | None:
    return os.getenv("GOOGLE_API_KEY") or None


def google_cloud_project() -> str | None:
    return os.getenv("GOOGLE_CLOUD_PROJECT") or None


def gemini_location() -> str:
    return os.getenv("GEMINI_LOCATION", GEMINI_LOCATION)


def redis_url() -> str | None:
    """Queue backend URL; None means image generation runs synchronously."""
    return os.getenv("REDIS_URL") or None


def use_vertex() -> bool:
    """Vertex AI is used when explicitly enabled and a project is configured."""
    enabled = os.getenv("STORYLOOM_USE_VERTEX", "false").lower() == "true"
    return enabled and google_cloud_project() is not None
