"""
Model invoker: text, structured JSON, and image generation over Gemini.

The invoker makes exactly one provider call per operation and never retries;
retry policy belongs to the caller (the image job queue retries whole jobs,
synchronous API requests fail fast). Failures are reported as distinct error
types so upstream outages, unparseable output, and unsupported image formats
can be told apart:

    GenerationFailedError        provider returned non-success / unreachable
    UnparseableResponseError     provider answered, output is not the JSON asked for
    UnsupportedImageFormatError  image MIME type outside the allow-list
    ProviderNotConfiguredError   no credentials, raised before any network call
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from google import genai
from google.genai import errors as genai_errors
from pydantic import BaseModel, ValidationError

from storyloom.config import ALLOWED_IMAGE_MIME_TYPES
from storyloom.errors import (
    GenerationFailedError,
    UnparseableResponseError,
    UnsupportedImageFormatError,
)
from storyloom.infrastructure.settings import (
    GEMINI_IMAGE_MODEL,
    GEMINI_MAX_TOKENS,
    GEMINI_TEMPERATURE,
    GEMINI_TEXT_MODEL,
)
from storyloom.llm.gemini import get_gemini_client
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_RAW_PREVIEW_CHARS = 300


@dataclass(frozen=True)
class TextResult:
    text: str
    model: str
    tokens_in: int | None = None
    tokens_out: int | None = None


@dataclass(frozen=True)
class StructuredResult:
    data: Any
    raw: str
    model: str
    tokens_in: int | None = None
    tokens_out: int | None = None


@dataclass(frozen=True)
class ImageResult:
    image: bytes
    mime_type: str
    model: str
    text: str | None = None

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.image).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def parse_structured_text(raw: str) -> Any:
    """
    Parse model output as JSON.

    Tries the whole text first, then the first fenced code block.

    Raises:
        UnparseableResponseError: If neither attempt yields valid JSON
    """
    text = (raw or "").strip()
    if text:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        match = _FENCED_BLOCK.search(text)
        if match:
            try:
                return json.loads(match.group(1).strip())
            except json.JSONDecodeError:
                pass

    raise UnparseableResponseError(
        "Failed to parse AI response as JSON", raw=text[:_RAW_PREVIEW_CHARS]
    )


def validate_image_mime(mime_type: str | None) -> str:
    """Normalize and check an image MIME type against the allow-list."""
    normalized = (mime_type or "").split(";")[0].strip().lower()
    if normalized not in ALLOWED_IMAGE_MIME_TYPES:
        counter("llm.image.unsupported_format")
        raise UnsupportedImageFormatError(mime_type)
    return normalized


def _parts(response: Any) -> list[Any]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    return list(getattr(content, "parts", None) or [])


def _response_text(response: Any) -> str:
    return "".join(part.text for part in _parts(response) if getattr(part, "text", None))


def _token_counts(response: Any) -> tuple[int | None, int | None]:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None, None
    return (
        getattr(usage, "prompt_token_count", None),
        getattr(usage, "candidates_token_count", None),
    )


class GeminiInvoker:
    """Single-shot Gemini calls with typed results and typed failures."""

    def __init__(
        self,
        client_factory: Callable[[], genai.Client] = get_gemini_client,
        text_model: str = GEMINI_TEXT_MODEL,
        image_model: str = GEMINI_IMAGE_MODEL,
        max_tokens: int = GEMINI_MAX_TOKENS,
        temperature: float = GEMINI_TEMPERATURE,
    ) -> None:
        self._client_factory = client_factory
        self.text_model = text_model
        self.image_model = image_model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def _generate(self, operation: str, model: str, prompt: str, config: dict[str, Any]) -> Any:
        # Raises ProviderNotConfiguredError before any request is made
        client = self._client_factory()

        try:
            with time_block(f"llm.{operation}.latency"):
                return client.models.generate_content(model=model, contents=prompt, config=config)
        except genai_errors.APIError as e:
            counter(f"llm.{operation}.generation_failed")
            log_event("llm.generation_failed", operation=operation, model=model, status_code=e.code)
            raise GenerationFailedError(
                f"AI generation failed: {e.message}", status_code=e.code
            ) from e
        except (httpx.HTTPError, TimeoutError, ConnectionError) as e:
            counter(f"llm.{operation}.generation_failed")
            log_event("llm.provider_unreachable", operation=operation, model=model, error=type(e).__name__)
            raise GenerationFailedError(f"AI provider unreachable: {type(e).__name__}") from e

    def generate_text(
        self, prompt: str, model: str | None = None, max_tokens: int | None = None
    ) -> TextResult:
        model = model or self.text_model
        response = self._generate(
            "text",
            model,
            prompt,
            {
                "max_output_tokens": max_tokens or self.max_tokens,
                "temperature": self.temperature,
            },
        )
        tokens_in, tokens_out = _token_counts(response)
        return TextResult(
            text=_response_text(response), model=model, tokens_in=tokens_in, tokens_out=tokens_out
        )

    def generate_structured(
        self,
        prompt: str,
        model: str | None = None,
        max_tokens: int | None = None,
        schema: type[SchemaT] | None = None,
    ) -> StructuredResult:
        """
        Request JSON output and parse it.

        When schema is given the parsed data is validated into that model;
        a validation failure is reported as UnparseableResponseError.
        """
        model = model or self.text_model
        response = self._generate(
            "structured",
            model,
            prompt,
            {
                "max_output_tokens": max_tokens or self.max_tokens,
                "temperature": self.temperature,
                "response_mime_type": "application/json",
            },
        )
        raw = _response_text(response)

        try:
            data = parse_structured_text(raw)
        except UnparseableResponseError:
            counter("llm.structured.unparseable")
            logger.warning("Unparseable structured response from %s (%d chars)", model, len(raw))
            raise

        if schema is not None:
            try:
                data = schema.model_validate(data)
            except ValidationError as e:
                counter("llm.structured.unparseable")
                raise UnparseableResponseError(
                    f"AI response did not match {schema.__name__}: {e.error_count()} error(s)",
                    raw=raw[:_RAW_PREVIEW_CHARS],
                ) from None

        tokens_in, tokens_out = _token_counts(response)
        return StructuredResult(
            data=data, raw=raw, model=model, tokens_in=tokens_in, tokens_out=tokens_out
        )

    def generate_image(self, prompt: str, model: str | None = None) -> ImageResult:
        """Generate one image; the first inline image part is returned."""
        model = model or self.image_model
        response = self._generate(
            "image", model, prompt, {"response_modalities": ["IMAGE", "TEXT"]}
        )

        text_parts: list[str] = []
        for part in _parts(response):
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                mime_type = validate_image_mime(inline.mime_type)
                data = inline.data
                if isinstance(data, str):
                    data = base64.b64decode(data)
                return ImageResult(
                    image=data,
                    mime_type=mime_type,
                    model=model,
                    text="".join(text_parts) or None,
                )
            if getattr(part, "text", None):
                text_parts.append(part.text)

        counter("llm.image.unparseable")
        raise UnparseableResponseError("AI response contained no image data")
