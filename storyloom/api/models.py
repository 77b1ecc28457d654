"""Shared request/response models and validation helpers for the Storyloom API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from storyloom.config import MAX_CONTENT_CHARS, MAX_IMAGE_PROMPT_CHARS
from storyloom.context.models import PathNode

# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def clamp_count(value: Any, default: int, low: int, high: int) -> int:
    """
    Coerce a client-supplied count into [low, high].

    Missing, zero or non-numeric values fall back to default; out-of-range
    values are clamped rather than rejected.
    """
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number == 0:
        return default
    return min(high, max(low, number))


def require_text(value: str, field_name: str, max_length: int | None = None) -> str:
    """Strip value; reject blank or over-long strings."""
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} is required and must be a non-empty string")
    if max_length is not None and len(stripped) > max_length:
        raise ValueError(f"{field_name} exceeds maximum length of {max_length} characters")
    return stripped


# =============================================================================
# SHARED MODELS
# =============================================================================


class PathNodeIn(BaseModel):
    """A narrative path entry as sent by the editor."""

    node_id: str = Field(..., min_length=1)
    content: str = Field(..., max_length=MAX_CONTENT_CHARS)
    title: str = ""
    label: str | None = None

    def to_path_node(self) -> PathNode:
        return PathNode(node_id=self.node_id, title=self.title, content=self.content, label=self.label)


def to_path(nodes: list[PathNodeIn]) -> list[PathNode]:
    return [node.to_path_node() for node in nodes]


class ImageGenerateRequest(BaseModel):
    node_id: str = Field(..., min_length=1, max_length=200)
    timeline_id: str = Field(..., min_length=1, max_length=200)
    prompt: str

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        return require_text(v, "prompt", MAX_IMAGE_PROMPT_CHARS)


class NodeImageResponse(BaseModel):
    node_id: str
    timeline_id: str
    image_url: str | None = None


class PortraitResponse(BaseModel):
    character_id: str
    timeline_id: str
    reference_image_url: str
