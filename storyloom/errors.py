"""
Error taxonomy for the generation pipeline.

Every error carries the HTTP status the API maps it to and a stable
error_type string clients can switch on. Provider, parse and format failures
are distinct types so they can be counted and alerted on separately.
"""

from __future__ import annotations

from typing import Any


class StoryloomError(Exception):
    """Base class for all pipeline errors."""

    http_status: int = 500
    error_type: str = "internal_error"
    public_message: str = "An internal error occurred. Please try again later."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.public_message)
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.public_message, "error_type": self.error_type, **self.details}


# --- Request validation ---


class InvalidTaskParametersError(StoryloomError, ValueError):
    http_status = 400
    error_type = "invalid_parameters"
    public_message = "Invalid request. Please check your input and try again."

    def to_payload(self) -> dict[str, Any]:
        # Parameter messages are written by us and safe to echo
        return {"detail": str(self), "error_type": self.error_type, **self.details}


# --- Lookups ---


class NodeNotFoundError(StoryloomError):
    http_status = 404
    error_type = "node_not_found"
    public_message = "Node not found"

    def __init__(self, node_id: str, timeline_id: str | None = None) -> None:
        super().__init__(f"Node {node_id} not found")
        self.node_id = node_id
        self.timeline_id = timeline_id


class TimelineNotFoundError(StoryloomError):
    http_status = 404
    error_type = "timeline_not_found"
    public_message = "Timeline not found"


class CharacterNotFoundError(StoryloomError):
    http_status = 404
    error_type = "character_not_found"
    public_message = "Character not found"


class JobNotFoundError(StoryloomError):
    http_status = 404
    error_type = "job_not_found"
    public_message = "Job not found"


# --- Concurrency ---


class GenerationInProgressError(StoryloomError):
    http_status = 409
    error_type = "generation_in_progress"
    public_message = "Image generation already in progress for this node"


# --- Governance ---


class RateLimitExceededError(StoryloomError):
    http_status = 429
    error_type = "rate_limited"
    public_message = "Too many requests. Please try again later."


class QuotaExceededError(StoryloomError):
    """Raised when a user's daily or monthly request ceiling is reached."""

    http_status = 429
    error_type = "quota_exceeded"

    def __init__(self, period: str, limit: int, used: int, reset_at: str) -> None:
        super().__init__(
            f"{period.capitalize()} quota exceeded",
            period=period,
            limit=limit,
            used=used,
            reset_at=reset_at,
        )
        self.period = period
        self.limit = limit
        self.used = used
        self.reset_at = reset_at

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return f"{self.period.capitalize()} quota exceeded. Limit: {self.limit} requests."


# --- Provider ---


class ProviderNotConfiguredError(StoryloomError):
    http_status = 503
    error_type = "provider_not_configured"
    public_message = "AI provider not configured"


class GenerationFailedError(StoryloomError):
    """The provider answered with a non-success status or the call failed."""

    http_status = 502
    error_type = "generation_failed"
    public_message = "AI generation failed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnparseableResponseError(StoryloomError):
    """The provider answered but the output could not be parsed as requested."""

    http_status = 502
    error_type = "unparseable_response"
    public_message = "Failed to parse AI response"

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class UnsupportedImageFormatError(StoryloomError):
    http_status = 502
    error_type = "unsupported_image_format"
    public_message = "AI provider returned an unsupported image format"

    def __init__(self, mime_type: str | None) -> None:
        super().__init__(f"Unexpected MIME type from provider: {mime_type}")
        self.mime_type = mime_type


# --- Infrastructure ---


class QueueUnavailableError(StoryloomError):
    http_status = 503
    error_type = "queue_unavailable"
    public_message = "Job queue not available"


class PersistenceError(StoryloomError):
    http_status = 500
    error_type = "persistence_failed"
    public_message = "Failed to save generated result"
