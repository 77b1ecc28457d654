"""Image job domain models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storyloom.config import MAX_IMAGE_PROMPT_CHARS


class JobStatus(str, Enum):
    """
    Lifecycle of an image generation request.

    submitted -> queued | completed | already_exists
    queued -> active -> completed | failed
    """

    SUBMITTED = "submitted"
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_EXISTS = "already_exists"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ALREADY_EXISTS)


class ImageJob(BaseModel):
    """Payload carried through the queue to a worker."""

    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1)
    timeline_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, max_length=MAX_IMAGE_PROMPT_CHARS)
    user_id: str = Field(..., min_length=1)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt cannot be blank")
        return v


class SubmitResult(BaseModel):
    status: JobStatus
    node_id: str
    job_id: str | None = None


class JobStatusResult(BaseModel):
    job_id: str
    node_id: str | None = None
    status: JobStatus
    error: str | None = None


class ExtractedScene(BaseModel):
    """Setting and characters pulled from scene text; either may be missing."""

    setting: str | None = None
    characters: list[str] = Field(default_factory=list)


class SettingExtraction(BaseModel):
    setting: str = ""


class CharacterExtraction(BaseModel):
    characters: list[str] = Field(default_factory=list)
